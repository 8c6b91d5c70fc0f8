"""Viewer visibility routes.

Routes are transport-only: parse the kind, ask the visibility service, wrap
the answer. The service fails closed, so an unavailable answer reads as
"not visible" / "everything excluded" / "zero visible".

IMPORTANT: Static routes (/visibility/{kind}/excluded, /count) must be
registered BEFORE /visibility/{kind}/{entity_id} to prevent id capture.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from shroud.api.deps import get_visibility_service, parse_kind
from shroud.auth.middleware import Viewer, get_viewer
from shroud.responses import success_response
from shroud.schemas.visibility import ExcludedIdsOut, VisibilityOut, VisibleCountOut
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.state import sorted_ids

router = APIRouter()


@router.get("/visibility/{kind}/excluded")
def get_excluded_ids(
    kind: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    """Ids of ``kind`` hidden from the viewer, for anti-joins in listings."""
    entity_kind = parse_kind(kind)
    ids = service.excluded_ids(viewer.user_id, entity_kind)
    out = ExcludedIdsOut(kind=entity_kind, ids=sorted_ids(ids))
    return success_response(out.model_dump(mode="json"))


@router.get("/visibility/{kind}/count")
def get_visible_count(
    kind: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    entity_kind = parse_kind(kind)
    count = service.visible_count(viewer.user_id, entity_kind)
    out = VisibleCountOut(kind=entity_kind, visible_count=count)
    return success_response(out.model_dump(mode="json"))


@router.get("/visibility/{kind}/{entity_id}")
def get_is_visible(
    kind: str,
    entity_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    service: Annotated[VisibilityQueryService, Depends(get_visibility_service)],
) -> dict:
    entity_kind = parse_kind(kind)
    visible = service.is_visible(viewer.user_id, entity_kind, entity_id)
    out = VisibilityOut(kind=entity_kind, entity_id=entity_id, visible=visible)
    return success_response(out.model_dump(mode="json"))
