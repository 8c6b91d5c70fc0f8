"""FastAPI dependencies for route handlers.

Common dependencies like database sessions and the visibility service.
"""

from fastapi import Request

from shroud.db.session import get_db, get_session_factory
from shroud.errors import ApiErrorCode, InvalidRequestError
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.registry import GraphRegistry
from shroud.services.visibility.types import EntityKind

__all__ = [
    "get_db",
    "get_graph_registry",
    "get_session_factory",
    "get_visibility_service",
    "parse_kind",
]


def get_visibility_service(request: Request) -> VisibilityQueryService:
    """Get the shared visibility service from app state.

    The service is created in the app lifespan and owns the exclusion cache
    and the recompute worker pool.
    """
    return request.app.state.visibility_service


def get_graph_registry(request: Request) -> GraphRegistry:
    return request.app.state.visibility_service.registry


def parse_kind(kind: str) -> EntityKind:
    """Parse an entity kind path segment.

    Raises:
        InvalidRequestError: E_INVALID_KIND for an unknown kind.
    """
    try:
        return EntityKind(kind)
    except ValueError:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_KIND, f"Unknown entity kind: {kind}"
        ) from None
