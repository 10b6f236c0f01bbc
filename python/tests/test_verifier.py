"""Tests for JwksVerifier claim validation.

MockJwtVerifier swaps the JWKS fetch for a local keypair, so
these tests exercise decoding and claim checks without network access.
"""

import pytest
from jwt import PyJWKClientError

from scholar.auth.verifier import JwksVerifier
from scholar.errors import ApiError, ApiErrorCode, UnauthorizedError
from tests.helpers import mint_expired_token, mint_test_token
from tests.support.test_verifier import MockJwtVerifier


@pytest.fixture
def verifier() -> JwksVerifier:
    return MockJwtVerifier(issuer="test-issuer/")


class TestJwksVerifier:
    def test_valid_token_returns_claims(self, verifier):
        claims = verifier.verify(mint_test_token("user-123"))

        assert claims["sub"] == "user-123"

    def test_issuer_trailing_slash_normalized(self, verifier):
        assert verifier.issuer == "test-issuer"

    def test_expired(self, verifier):
        with pytest.raises(UnauthorizedError, match="expired"):
            verifier.verify(mint_expired_token("user-123"))

    def test_wrong_issuer(self, verifier):
        with pytest.raises(UnauthorizedError):
            verifier.verify(mint_test_token("user-123", issuer="elsewhere"))

    def test_blank_sub_rejected(self, verifier):
        with pytest.raises(UnauthorizedError):
            verifier.verify(mint_test_token("   "))

    def test_jwks_unreachable(self, monkeypatch):
        verifier = JwksVerifier(
            jwks_url="http://localhost:9999/.well-known/jwks.json",
            issuer="test-issuer",
            audiences=["test-audience"],
        )

        def unreachable(token):
            raise PyJWKClientError("Fail to fetch data from the url")

        monkeypatch.setattr(verifier, "_get_signing_key", unreachable)

        with pytest.raises(ApiError) as exc_info:
            verifier.verify(mint_test_token("user-123"))

        assert exc_info.value.code == ApiErrorCode.E_AUTH_UNAVAILABLE
        assert exc_info.value.status_code == 503
