"""Viewer hide list routes.

A hide or unhide is committed first; the visibility service is told about
it only after the commit succeeds. If the service cannot bring the cached
exclusions up to date, the entry is dropped and the next read recomputes
it, so the response still reports the committed change.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shroud.api.deps import get_db, get_visibility_service, parse_kind
from shroud.auth.middleware import Viewer, get_viewer
from shroud.db.session import transaction
from shroud.errors import ApiErrorCode, ExclusionError, NotFoundError
from shroud.logging import get_logger
from shroud.responses import success_response
from shroud.schemas.visibility import (
    BulkHideOut,
    BulkHideRequest,
    HiddenEntityOut,
    HideToggleOut,
    UnhideAllOut,
)
from shroud.services import rules as rules_service
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.types import EntityKind

logger = get_logger(__name__)

router = APIRouter()


def _notify_hide_toggled(
    service: VisibilityQueryService, user_id: int, kind: EntityKind, entity_id: str, hidden: bool
) -> bool:
    try:
        service.on_hide_toggled(user_id, kind, entity_id, hidden)
    except ExclusionError as exc:
        logger.warning(
            "visibility_hook_failed",
            user_id=user_id,
            kind=kind.value,
            entity_id=entity_id,
            hidden=hidden,
            error=str(exc),
        )
        return False
    return True


@router.get("/hidden")
def list_hidden(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    kind: Annotated[str | None, Query(description="Filter by entity kind")] = None,
) -> dict:
    """List the viewer's hidden entities, oldest first within each kind."""
    entity_kind = parse_kind(kind) if kind is not None else None
    hidden = rules_service.list_hidden_entities(db, viewer.user_id, entity_kind)
    return success_response(
        [HiddenEntityOut.from_hidden(entry).model_dump(mode="json") for entry in hidden]
    )


@router.post("/hidden/bulk")
def hide_entities(
    body: BulkHideRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Hide several entities in one transaction.

    Raises:
        InvalidRequestError: E_INVALID_KIND if any entry names an unknown kind.
    """
    entities = [(parse_kind(entry.kind), entry.entity_id) for entry in body.entities]
    with transaction(db):
        added = rules_service.hide_entities(db, viewer.user_id, entities)

    applied = True
    if added:
        try:
            service.on_hides_added(viewer.user_id, [(ref.kind, ref.id) for ref in added])
        except ExclusionError as exc:
            logger.warning(
                "visibility_hook_failed",
                user_id=viewer.user_id,
                op="bulk_hide",
                entities=len(added),
                error=str(exc),
            )
            applied = False

    out = BulkHideOut(
        requested=len(entities),
        hidden=[HiddenEntityOut(kind=ref.kind, entity_id=ref.id) for ref in added],
        already_hidden=len(entities) - len(added),
        applied=applied,
    )
    return success_response(out.model_dump(mode="json"))


@router.delete("/hidden/all")
def unhide_all(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
    kind: Annotated[str | None, Query(description="Only clear hides of this kind")] = None,
) -> dict:
    """Clear the viewer's hide list, or only the hides of one kind."""
    entity_kind = parse_kind(kind) if kind is not None else None
    with transaction(db):
        removed = rules_service.unhide_all(db, viewer.user_id, entity_kind)

    applied = True
    if removed:
        try:
            service.on_hidden_cleared(viewer.user_id)
        except ExclusionError as exc:
            logger.warning(
                "visibility_hook_failed",
                user_id=viewer.user_id,
                op="unhide_all",
                kind=entity_kind.value if entity_kind is not None else None,
                error=str(exc),
            )
            applied = False

    out = UnhideAllOut(kind=entity_kind, unhidden=removed, applied=applied)
    return success_response(out.model_dump(mode="json"))


@router.put("/hidden/{kind}/{entity_id}")
def hide_entity(
    kind: str,
    entity_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Hide an entity from the viewer. Idempotent when already hidden."""
    entity_kind = parse_kind(kind)
    with transaction(db):
        changed = rules_service.hide_entity(db, viewer.user_id, entity_kind, entity_id)

    applied = True
    if changed:
        applied = _notify_hide_toggled(service, viewer.user_id, entity_kind, entity_id, True)

    out = HideToggleOut(
        kind=entity_kind, entity_id=entity_id, hidden=True, changed=changed, applied=applied
    )
    return success_response(out.model_dump(mode="json"))


@router.delete("/hidden/{kind}/{entity_id}")
def unhide_entity(
    kind: str,
    entity_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Remove a hide.

    Raises:
        NotFoundError: E_HIDDEN_ENTITY_NOT_FOUND if the entity was not hidden.
    """
    entity_kind = parse_kind(kind)
    with transaction(db):
        changed = rules_service.unhide_entity(db, viewer.user_id, entity_kind, entity_id)
    if not changed:
        raise NotFoundError(ApiErrorCode.E_HIDDEN_ENTITY_NOT_FOUND, "Entity is not hidden")

    applied = _notify_hide_toggled(service, viewer.user_id, entity_kind, entity_id, False)
    out = HideToggleOut(
        kind=entity_kind, entity_id=entity_id, hidden=False, changed=True, applied=applied
    )
    return success_response(out.model_dump(mode="json"))
