"""Error definitions.

API errors carry their HTTP status codes. Engine errors (``ExclusionError``
and subclasses) are raised inside the exclusion engine and translated at the
service or route boundary.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"
    E_ADMIN_ONLY = "E_ADMIN_ONLY"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_RULE_NOT_FOUND = "E_RULE_NOT_FOUND"
    E_HIDDEN_ENTITY_NOT_FOUND = "E_HIDDEN_ENTITY_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_KIND = "E_INVALID_KIND"

    # Server errors
    E_CONTENT_UNAVAILABLE = "E_CONTENT_UNAVAILABLE"  # 503
    E_RECOMPUTE_FAILED = "E_RECOMPUTE_FAILED"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_ADMIN_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_RULE_NOT_FOUND: 404,
    ApiErrorCode.E_HIDDEN_ENTITY_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_KIND: 400,
    ApiErrorCode.E_CONTENT_UNAVAILABLE: 503,
    ApiErrorCode.E_RECOMPUTE_FAILED: 503,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class ContentUnavailableError(ApiError):
    """Visibility could not be established; callers must show nothing."""

    def __init__(self, message: str = "Content temporarily unavailable"):
        super().__init__(ApiErrorCode.E_CONTENT_UNAVAILABLE, message)


# =============================================================================
# Exclusion engine errors
# =============================================================================


class ExclusionError(Exception):
    """Base class for failures inside the exclusion engine."""


class SnapshotUnavailableError(ExclusionError):
    """No entity graph snapshot is available for the requested version."""

    def __init__(self, version: int | None = None):
        self.version = version
        if version is None:
            message = "no entity graph snapshot has been published"
        else:
            message = f"entity graph snapshot {version} is not available"
        super().__init__(message)


class RuleStoreUnavailableError(ExclusionError):
    """Restriction rules or hidden entities could not be read."""

    def __init__(self, user_id: int | None, message: str):
        self.user_id = user_id
        super().__init__(message)


class CyclicGraphDetected(ExclusionError):
    """A parent/child hierarchy contains a cycle.

    Reported on the graph and logged; traversals never raise it.
    """

    def __init__(self, kind: str, members: frozenset[str]):
        self.kind = kind
        self.members = members
        super().__init__(f"cycle in {kind} hierarchy involving {len(members)} entities")


class StaleVersionDiscarded(ExclusionError):
    """A computed result was older than what the cache already holds."""

    def __init__(self, user_id: int, version: int, current_version: int | None):
        self.user_id = user_id
        self.version = version
        self.current_version = current_version
        super().__init__(
            f"exclusions for user {user_id} at version {version} superseded by {current_version}"
        )


class InconsistentExclusionStateError(ExclusionError):
    """An incremental update found a cause the cached state never recorded."""

    def __init__(self, user_id: int, entity: str, detail: str = ""):
        self.user_id = user_id
        self.entity = entity
        message = f"inconsistent exclusion state for user {user_id} at {entity}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
