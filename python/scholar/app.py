"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, auth middleware, request-id middleware, and routes.

Middleware Ordering:
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- All requests (including auth failures) get X-Request-ID

LLM Client Lifecycle:
- httpx.AsyncClient is created at startup, stored in app.state
- LLMRouter wraps the shared client for connection pooling
- Client is closed gracefully at shutdown
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scholar.api.routes import create_api_router
from scholar.auth.middleware import AuthMiddleware
from scholar.auth.verifier import JwksVerifier
from scholar.config import get_settings
from scholar.errors import ApiError, ApiErrorCode
from scholar.logging import configure_logging, get_logger
from scholar.middleware.request_id import RequestIDMiddleware
from scholar.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from scholar.services.llm import LLMRouter

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)


def create_token_verifier() -> JwksVerifier:
    """Create the JWKS token verifier from settings."""
    settings = get_settings()

    return JwksVerifier(
        jwks_url=settings.auth_jwks_url,  # type: ignore
        issuer=settings.normalized_issuer,  # type: ignore
        audiences=settings.audience_list,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared HTTP client and LLM router; close them on shutdown.

    A router already placed on app.state (tests) is left alone.
    """
    settings = get_settings()
    owns_router = getattr(app.state, "llm_router", None) is None

    if owns_router:
        app.state.httpx_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.llm_timeout_s, connect=10.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )
        app.state.llm_router = LLMRouter.from_settings(app.state.httpx_client, settings)
        logger.info(
            "llm_router_initialized",
            provider=settings.llm_provider.value,
            default_model=settings.default_model,
        )

    yield

    if owns_router:
        await app.state.httpx_client.aclose()
        logger.info("httpx_client_closed")


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier=None,
    llm_router: LLMRouter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding auth middleware (for testing).
        token_verifier: Optional custom token verifier (for testing).
        llm_router: Optional pre-built router (for testing); otherwise built at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title="Scholar API",
        description="Conversational study assistant backend",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if llm_router is not None:
        app.state.llm_router = llm_router

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

    app.include_router(create_api_router())

    if not skip_auth_middleware:
        verifier = token_verifier or create_token_verifier()
        app.add_middleware(AuthMiddleware, verifier=verifier)
        logger.info("auth_middleware_enabled", env=settings.scholar_env.value)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    Call this AFTER all other middleware is added, so it runs FIRST.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
