"""Internal-only catalog routes.

These routes are NOT exposed through the public gateway. They require the
internal header in every environment.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from shroud.api.deps import get_db, get_graph_registry
from shroud.responses import success_response
from shroud.schemas.visibility import SyncCompleteOut
from shroud.services.catalog import publish_catalog_snapshot
from shroud.services.visibility.registry import GraphRegistry

router = APIRouter()


@router.post("/internal/catalog/sync-complete")
def catalog_sync_complete(
    db: Annotated[Session, Depends(get_db)],
    registry: Annotated[GraphRegistry, Depends(get_graph_registry)],
) -> dict:
    """Load the synced catalog and publish it as the next graph version.

    Cached exclusions move onto the new version through the registry's
    listeners: re-stamped when nothing changed, recomputed otherwise.
    """
    version = publish_catalog_snapshot(db, registry)
    return success_response(SyncCompleteOut(version=version).model_dump(mode="json"))
