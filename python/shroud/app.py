"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, viewer middleware, request-id middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Visibility Service Lifecycle:
- The graph registry, rule store and VisibilityQueryService are created at
  startup and stored in app.state
- The current catalog is loaded and published as the first graph version;
  if that fails every visibility query fails closed until a sync completes
- The recompute worker pool is shut down at shutdown
"""

import json
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from shroud.api.routes import create_api_router
from shroud.auth.middleware import ViewerMiddleware
from shroud.config import Environment, Settings, get_settings
from shroud.db.session import get_session_factory
from shroud.errors import ApiError, ApiErrorCode
from shroud.logging import configure_logging, get_logger
from shroud.middleware.request_id import RequestIDMiddleware
from shroud.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from shroud.services.catalog import publish_catalog_snapshot
from shroud.services.projection import make_projection_writer
from shroud.services.rules import SqlRuleStore
from shroud.services.visibility.query import VisibilityQueryService
from shroud.services.visibility.registry import GraphRegistry

logger = get_logger(__name__)


def create_visibility_service(settings: Settings) -> VisibilityQueryService:
    """Build the registry, SQL rule store and query service from settings."""
    session_factory = get_session_factory()
    on_stored = None
    if settings.exclusion_persist_projection:
        on_stored = make_projection_writer(session_factory)

    return VisibilityQueryService(
        GraphRegistry(),
        SqlRuleStore(session_factory),
        workers=settings.exclusion_recompute_workers,
        query_wait_timeout_s=settings.exclusion_query_wait_timeout_s,
        retry_delays=settings.retry_delays,
        on_stored=on_stored,
    )


def load_initial_snapshot(service: VisibilityQueryService) -> int | None:
    """Publish the catalog as it is in SQL now. Returns the version, or None on failure."""
    db = get_session_factory()()
    try:
        return publish_catalog_snapshot(db, service.registry)
    except SQLAlchemyError as e:
        logger.warning("initial_snapshot_load_failed", error=str(e))
        return None
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle resources.

    A service already placed on ``app.state`` (tests) is used as-is and not
    closed here.
    """
    settings = get_settings()

    service = getattr(app.state, "visibility_service", None)
    owns_service = service is None
    if owns_service:
        service = create_visibility_service(settings)
        app.state.visibility_service = service
        version = load_initial_snapshot(service)
        logger.info(
            "visibility_service_initialized",
            graph_version=version,
            workers=settings.exclusion_recompute_workers,
            persist_projection=settings.exclusion_persist_projection,
        )

    yield

    if owns_service:
        service.close()
        logger.info("visibility_service_closed")


def create_app(
    skip_viewer_middleware: bool = False,
    visibility_service: VisibilityQueryService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_viewer_middleware: If True, skip adding viewer middleware (for testing).
        visibility_service: Optional prebuilt visibility service (for testing).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()
    configure_logging(json_format=settings.shroud_env != Environment.LOCAL)

    app = FastAPI(
        title="Shroud API",
        description="Per-user content visibility for a media library",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if visibility_service is not None:
        app.state.visibility_service = visibility_service

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request body"),
        )

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    # Use router factory to avoid import-time settings loading
    app.include_router(create_api_router())

    if not skip_viewer_middleware:
        app.add_middleware(
            ViewerMiddleware,
            requires_internal_header=settings.requires_internal_header,
            internal_secret=settings.shroud_internal_secret,
        )
        logger.info(
            "viewer_middleware_enabled",
            env=settings.shroud_env.value,
            internal_header_required=settings.requires_internal_header,
        )

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
