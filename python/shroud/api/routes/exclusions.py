"""Admin exclusion maintenance routes."""

from typing import Annotated

from fastapi import APIRouter, Depends

from shroud.api.deps import get_visibility_service
from shroud.auth.middleware import Viewer, require_admin
from shroud.errors import ApiError, ApiErrorCode, ExclusionError
from shroud.logging import get_logger
from shroud.responses import success_response
from shroud.schemas.visibility import ExclusionStatsOut, RecomputeAllOut, RecomputeUserOut
from shroud.services.visibility.query import VisibilityQueryService

logger = get_logger(__name__)

router = APIRouter()


@router.post("/admin/exclusions/recompute-all")
def recompute_all(
    admin: Annotated[Viewer, Depends(require_admin)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Recompute every known user. Per-user failures are reported, not raised."""
    result = service.recompute_all()
    return success_response(RecomputeAllOut.from_result(result).model_dump(mode="json"))


@router.post("/admin/exclusions/recompute/{user_id}")
def recompute_user(
    user_id: int,
    admin: Annotated[Viewer, Depends(require_admin)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Recompute one user's exclusions from scratch.

    Raises:
        ApiError: E_RECOMPUTE_FAILED if the graph or rules could not be read.
    """
    try:
        result = service.recompute_user(user_id)
    except ExclusionError as exc:
        logger.warning("exclusion_recompute_failed", user_id=user_id, error=str(exc))
        raise ApiError(ApiErrorCode.E_RECOMPUTE_FAILED, "Recompute failed") from exc
    return success_response(RecomputeUserOut.from_result(user_id, result).model_dump(mode="json"))


@router.get("/admin/exclusions/stats")
def exclusion_stats(
    admin: Annotated[Viewer, Depends(require_admin)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    stats = service.get_exclusion_stats()
    return success_response(ExclusionStatsOut.from_stats(stats).model_dump(mode="json"))
