"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from shroud.api.routes.exclusions import router as exclusions_router
from shroud.api.routes.health import router as health_router
from shroud.api.routes.hidden import router as hidden_router
from shroud.api.routes.internal import router as internal_router
from shroud.api.routes.restrictions import router as restrictions_router
from shroud.api.routes.visibility import router as visibility_router


def create_api_router() -> APIRouter:
    """Create and configure the API router.

    Returns:
        Configured APIRouter with all routes registered.
    """
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(visibility_router, tags=["visibility"])
    api_router.include_router(hidden_router, tags=["hidden"])
    api_router.include_router(restrictions_router, tags=["admin"])
    api_router.include_router(exclusions_router, tags=["admin"])
    api_router.include_router(internal_router, tags=["internal"])
    return api_router


__all__ = ["create_api_router"]
