"""Token verification implementations.

Provides:
- TokenVerifier: Protocol for token verification
- JwksVerifier: Verifier backed by the identity provider's JWKS endpoint

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

import threading
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
    PyJWKClientError,
)

from scholar.errors import ApiError, ApiErrorCode, UnauthorizedError
from scholar.logging import get_logger

logger = get_logger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60


class TokenVerifier(Protocol):
    """Protocol for token verification."""

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid, expired, or malformed.
            ApiError(E_AUTH_UNAVAILABLE): Infrastructure failure (JWKS unreachable).
        """
        ...


class JwksVerifier:
    """Token verifier using the identity provider's JWKS.

    Validates:
    - Signature via JWKS (RS256 or ES256)
    - exp with ±60s clock skew
    - iss matches configured issuer (after normalization)
    - aud must be in configured audience list
    - sub must be a non-empty string; it becomes the user id
    """

    def __init__(
        self,
        jwks_url: str,
        issuer: str,
        audiences: list[str],
        cache_ttl: int = 3600,
    ):
        self.jwks_url = jwks_url
        self.issuer = issuer.rstrip("/")
        self.audiences = audiences
        self.cache_ttl = cache_ttl

        self._jwks_client: PyJWKClient | None = None
        self._jwks_lock = threading.Lock()

    def _get_jwks_client(self, refresh: bool = False) -> PyJWKClient:
        """Get or create the JWKS client. refresh=True drops the cached keys."""
        with self._jwks_lock:
            if self._jwks_client is None or refresh:
                self._jwks_client = PyJWKClient(
                    self.jwks_url,
                    cache_keys=True,
                    lifespan=self.cache_ttl,
                )
            return self._jwks_client

    def verify(self, token: str) -> dict[str, Any]:
        """Verify a bearer JWT.

        Raises:
            UnauthorizedError: Token is invalid.
            ApiError(E_AUTH_UNAVAILABLE): JWKS fetch failed.
        """
        try:
            signing_key = self._get_signing_key(token)
        except PyJWKClientError as e:
            logger.warning("auth_failure", reason="jwks_unavailable", error=str(e))
            raise ApiError(
                ApiErrorCode.E_AUTH_UNAVAILABLE,
                "Authentication service unavailable",
            ) from e

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=self.audiences,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={
                    "require": ["exp", "iss", "sub"],
                    "verify_aud": True,
                },
            )
        except ExpiredSignatureError as e:
            logger.warning("auth_failure", reason="expired_token")
            raise UnauthorizedError(message="Token expired") from e
        except InvalidSignatureError as e:
            logger.warning("auth_failure", reason="invalid_signature")
            raise UnauthorizedError(message="Invalid token signature") from e
        except InvalidIssuerError as e:
            logger.warning("auth_failure", reason="invalid_issuer")
            raise UnauthorizedError(message="Invalid token issuer") from e
        except InvalidAudienceError as e:
            logger.warning("auth_failure", reason="invalid_audience")
            raise UnauthorizedError(message="Invalid token audience") from e
        except DecodeError as e:
            logger.warning("auth_failure", reason="decode_error")
            raise UnauthorizedError(message="Invalid token format") from e
        except InvalidTokenError as e:
            logger.warning("auth_failure", reason="invalid_token")
            raise UnauthorizedError(message="Invalid token") from e

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            logger.warning("auth_failure", reason="missing_sub")
            raise UnauthorizedError(message="Invalid token: missing sub")

        return payload

    def _get_signing_key(self, token: str) -> Any:
        """Get the signing key for the token, refreshing the JWKS once on kid miss.

        Raises:
            PyJWKClientError: If JWKS fetch fails.
            UnauthorizedError: If kid not found after refresh.
        """
        client = self._get_jwks_client()

        try:
            return client.get_signing_key_from_jwt(token)
        except PyJWKClientError as e:
            if "Unable to find" not in str(e) and "kid" not in str(e).lower():
                raise
            logger.info("jwks_refresh_kid_miss")
            client = self._get_jwks_client(refresh=True)
            try:
                return client.get_signing_key_from_jwt(token)
            except PyJWKClientError as retry_e:
                logger.warning("auth_failure", reason="kid_not_found")
                raise UnauthorizedError(message="Invalid token: signing key not found") from retry_e
