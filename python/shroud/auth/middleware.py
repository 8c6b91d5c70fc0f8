"""Viewer identity middleware for FastAPI.

Authentication happens upstream. The gateway forwards the authenticated
viewer as ``X-Viewer-Id`` / ``X-Viewer-Role`` headers and, in staging/prod,
proves it is the gateway with the ``X-Shroud-Internal`` secret header.

Provides:
- ViewerMiddleware: Global middleware for internal header + viewer header parsing
- get_viewer: Dependency for accessing the viewer identity
- require_admin: Dependency restricting a route to admin viewers
"""

import hmac
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shroud.errors import ApiError, ApiErrorCode, ForbiddenError
from shroud.logging import get_logger
from shroud.responses import error_response

logger = get_logger(__name__)

# Header names
INTERNAL_HEADER = "x-shroud-internal"
VIEWER_ID_HEADER = "x-viewer-id"
VIEWER_ROLE_HEADER = "x-viewer-role"

ADMIN_ROLE = "admin"

# Paths that don't require a viewer
PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

# Paths reachable with only the internal header (no viewer)
INTERNAL_PATH_PREFIX = "/internal/"


@dataclass
class Viewer:
    """Identity of the user a request is served for.

    Attributes:
        user_id: The viewer's numeric user ID.
        is_admin: Whether the viewer may manage other users' restrictions.
    """

    user_id: int
    is_admin: bool = False


class ViewerMiddleware(BaseHTTPMiddleware):
    """Attach the forwarded viewer to ``request.state``.

    Order of checks:
    1. Skip if public path
    2. Verify internal header (if required)
    3. Skip viewer parsing for internal paths
    4. Parse ``X-Viewer-Id`` and ``X-Viewer-Role``
    5. Attach Viewer to request state
    """

    def __init__(
        self,
        app: ASGIApp,
        requires_internal_header: bool = False,
        internal_secret: str | None = None,
    ):
        super().__init__(app)
        self.requires_internal_header = requires_internal_header
        self.internal_secret = internal_secret

    async def dispatch(self, request: Request, call_next) -> JSONResponse:
        path = request.url.path
        if path in PUBLIC_PATHS:
            return await call_next(request)

        if self.requires_internal_header or path.startswith(INTERNAL_PATH_PREFIX):
            error_response_obj = self._verify_internal_header(request)
            if error_response_obj:
                return error_response_obj

        if path.startswith(INTERNAL_PATH_PREFIX):
            return await call_next(request)

        raw_user_id = request.headers.get(VIEWER_ID_HEADER)
        if not raw_user_id:
            logger.warning("auth_failure", reason="missing_viewer", request_path=path)
            return self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED, "Authentication required", 401
            )
        try:
            user_id = int(raw_user_id)
        except ValueError:
            logger.warning("auth_failure", reason="invalid_viewer", request_path=path)
            return self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED, "Invalid viewer header", 401
            )

        role = request.headers.get(VIEWER_ROLE_HEADER, "").strip().lower()
        request.state.viewer = Viewer(user_id=user_id, is_admin=role == ADMIN_ROLE)

        return await call_next(request)

    def _verify_internal_header(self, request: Request) -> JSONResponse | None:
        """Verify the internal header using constant-time comparison.

        Returns:
            JSONResponse if verification fails, None if successful.
        """
        header_value = request.headers.get(INTERNAL_HEADER)

        if header_value is None:
            logger.warning(
                "auth_failure", reason="internal_header_missing", request_path=request.url.path
            )
            return self._error_json_response(
                ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required", 403
            )

        if not self.internal_secret:
            logger.error("internal_secret_not_configured")
            return self._error_json_response(
                ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required", 403
            )

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(header_value.encode(), self.internal_secret.encode()):
            logger.warning(
                "auth_failure", reason="internal_header_mismatch", request_path=request.url.path
            )
            return self._error_json_response(
                ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required", 403
            )

        return None

    def _error_json_response(
        self, code: ApiErrorCode, message: str, status_code: int
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=error_response(code, message),
        )


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency to get the viewer.

    Raises:
        ApiError: If viewer is not set (middleware didn't run or path is public).
    """
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer


def require_admin(viewer: Viewer = Depends(get_viewer)) -> Viewer:
    """FastAPI dependency that admits admin viewers only."""
    if not viewer.is_admin:
        raise ForbiddenError(ApiErrorCode.E_ADMIN_ONLY, "Admin access required")
    return viewer
