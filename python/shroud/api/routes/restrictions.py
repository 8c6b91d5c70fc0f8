"""Admin restriction rule routes.

Admin-only. One rule per (user, kind); PUT replaces the whole rule.
The visibility service is notified after the commit succeeds.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from shroud.api.deps import get_db, get_visibility_service, parse_kind
from shroud.auth.middleware import Viewer, require_admin
from shroud.db.session import transaction
from shroud.errors import ApiError, ApiErrorCode, ExclusionError, NotFoundError
from shroud.logging import get_logger
from shroud.responses import success_response
from shroud.schemas.visibility import RestrictionRuleOut, SetRestrictionRequest
from shroud.services import rules as rules_service
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.types import RestrictionRule

logger = get_logger(__name__)

router = APIRouter()


def _notify_rule_changed(
    service: VisibilityQueryService,
    user_id: int,
    old_rule: RestrictionRule | None,
    new_rule: RestrictionRule | None,
) -> None:
    try:
        service.on_rule_changed(user_id, old_rule, new_rule)
    except ExclusionError as exc:
        # The rule is committed and the user's cache entry was dropped;
        # report the failed refresh so the admin can retry a recompute.
        logger.warning("visibility_hook_failed", user_id=user_id, error=str(exc))
        raise ApiError(
            ApiErrorCode.E_RECOMPUTE_FAILED, "Rule saved; exclusions will refresh on next read"
        ) from exc


@router.get("/admin/users/{user_id}/restrictions")
def list_restrictions(
    user_id: int,
    admin: Annotated[Viewer, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    rules = rules_service.list_restriction_rules(db, user_id)
    return success_response(
        [RestrictionRuleOut.from_rule(rule).model_dump(mode="json") for rule in rules]
    )


@router.put("/admin/users/{user_id}/restrictions/{kind}")
def set_restriction(
    user_id: int,
    kind: str,
    body: SetRestrictionRequest,
    admin: Annotated[Viewer, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Create or replace the user's rule for ``kind`` (tag, studio, group, gallery)."""
    entity_kind = parse_kind(kind)
    with transaction(db):
        old_rule, new_rule = rules_service.set_restriction_rule(
            db, user_id, entity_kind, body.mode, body.entity_ids
        )
    logger.info(
        "restriction_rule_set",
        admin_user_id=admin.user_id,
        user_id=user_id,
        kind=entity_kind.value,
        mode=new_rule.mode.value,
        ids=len(new_rule.ids),
    )

    if old_rule != new_rule:
        _notify_rule_changed(service, user_id, old_rule, new_rule)
    return success_response(RestrictionRuleOut.from_rule(new_rule).model_dump(mode="json"))


@router.delete("/admin/users/{user_id}/restrictions/{kind}")
def clear_restriction(
    user_id: int,
    kind: str,
    admin: Annotated[Viewer, Depends(require_admin)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Delete the user's rule for ``kind``.

    Raises:
        NotFoundError: E_RULE_NOT_FOUND if there is no rule to clear.
    """
    entity_kind = parse_kind(kind)
    with transaction(db):
        old_rule = rules_service.clear_restriction_rule(db, user_id, entity_kind)
    if old_rule is None:
        raise NotFoundError(ApiErrorCode.E_RULE_NOT_FOUND, "No restriction rule for this kind")
    logger.info(
        "restriction_rule_cleared",
        admin_user_id=admin.user_id,
        user_id=user_id,
        kind=entity_kind.value,
    )

    _notify_rule_changed(service, user_id, old_rule, None)
    return success_response(RestrictionRuleOut.from_rule(old_rule).model_dump(mode="json"))
