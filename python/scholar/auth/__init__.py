"""Authentication module.

This module provides:
- Token verification (JWKS verifier)
- Auth middleware for FastAPI
- Request state with viewer identity

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

from scholar.auth.middleware import AuthMiddleware, Viewer, get_viewer
from scholar.auth.verifier import JwksVerifier, TokenVerifier

__all__ = [
    "AuthMiddleware",
    "Viewer",
    "get_viewer",
    "JwksVerifier",
    "TokenVerifier",
]
