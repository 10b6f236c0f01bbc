"""Authentication middleware for FastAPI.

Provides:
- AuthMiddleware: Global middleware for bearer token verification
- get_viewer: Dependency for accessing authenticated viewer identity

Unauthenticated requests are rejected before any route runs, so no
conversation is read or written on their behalf.
"""

from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from scholar.auth.verifier import TokenVerifier
from scholar.errors import ApiError, ApiErrorCode, UnauthorizedError
from scholar.logging import get_logger, user_id_var
from scholar.responses import error_response

logger = get_logger(__name__)

AUTHORIZATION_HEADER = "authorization"

# Paths that don't require authentication
PUBLIC_PATHS = {"/health", "/health/llm", "/docs", "/redoc", "/openapi.json"}


@dataclass(frozen=True)
class Viewer:
    """Authenticated viewer identity (JWT sub claim)."""

    user_id: str


class AuthMiddleware(BaseHTTPMiddleware):
    """Bearer token authentication on all non-public paths.

    Order of checks:
    1. Skip if public path
    2. Extract and parse bearer token
    3. Verify token via TokenVerifier
    4. Attach Viewer to request state
    """

    def __init__(self, app: ASGIApp, verifier: TokenVerifier):
        super().__init__(app)
        self.verifier = verifier

    async def dispatch(self, request: Request, call_next) -> JSONResponse:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        token, error_response_obj = self._extract_bearer_token(request)
        if error_response_obj:
            return error_response_obj

        try:
            payload = self.verifier.verify(token)
        except ApiError as e:
            return self._error_json_response(e.code, e.message, e.status_code)

        viewer = Viewer(user_id=payload["sub"])
        request.state.viewer = viewer
        user_id_var.set(viewer.user_id)

        return await call_next(request)

    def _extract_bearer_token(self, request: Request) -> tuple[str, JSONResponse | None]:
        """Extract bearer token from Authorization header.

        Returns:
            Tuple of (token, error_response). Token is empty string if error.
        """
        auth_header = request.headers.get(AUTHORIZATION_HEADER)

        if not auth_header:
            logger.warning("auth_failure", reason="missing_header", request_path=request.url.path)
            return "", self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED,
                "Authentication required",
                401,
            )

        token = auth_header[7:].strip() if auth_header.lower().startswith("bearer ") else ""
        if not token:
            logger.warning(
                "auth_failure", reason="invalid_header_format", request_path=request.url.path
            )
            return "", self._error_json_response(
                ApiErrorCode.E_UNAUTHENTICATED,
                "Invalid authorization header format",
                401,
            )

        return token, None

    def _error_json_response(
        self, code: ApiErrorCode, message: str, status_code: int
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=error_response(code, message),
        )


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency to get the authenticated viewer.

    Raises:
        UnauthorizedError: If viewer is not set (middleware didn't run or path is public).
    """
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise UnauthorizedError(message="Authentication required")
    return viewer


# Type alias for dependency injection
ViewerDep = Depends(get_viewer)
