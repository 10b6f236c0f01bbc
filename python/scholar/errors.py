"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
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
    E_CONVERSATION_FORBIDDEN = "E_CONVERSATION_FORBIDDEN"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CONVERSATION_NOT_FOUND = "E_CONVERSATION_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_MESSAGE = "E_INVALID_MESSAGE"
    E_CONVERSATION_ID_REQUIRED = "E_CONVERSATION_ID_REQUIRED"

    # Server errors
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_UPSTREAM_UNAVAILABLE = "E_UPSTREAM_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_CONVERSATION_FORBIDDEN: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_CONVERSATION_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_MESSAGE: 400,
    ApiErrorCode.E_CONVERSATION_ID_REQUIRED: 400,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_UPSTREAM_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
}

# Codes a client may retry unchanged
RETRYABLE_CODES = frozenset({ApiErrorCode.E_UPSTREAM_UNAVAILABLE, ApiErrorCode.E_AUTH_UNAVAILABLE})


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
        retryable: Whether the same request may succeed if resent
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        self.retryable = code in RETRYABLE_CODES
        super().__init__(message)


class UnauthorizedError(ApiError):
    """Missing or invalid caller identity."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_UNAUTHENTICATED, message: str = "Unauthorized"
    ):
        super().__init__(code, message)


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


class UpstreamUnavailableError(ApiError):
    """The completion provider failed or could not be reached."""

    def __init__(
        self,
        code: ApiErrorCode = ApiErrorCode.E_UPSTREAM_UNAVAILABLE,
        message: str = "Completion provider unavailable",
    ):
        super().__init__(code, message)
