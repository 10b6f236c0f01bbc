"""Pytest configuration and fixtures for Scholar tests.

Test isolation strategy:
- Every test that touches the database gets its own in-memory SQLite engine
  (StaticPool, so threadpool workers share the one connection) with the ORM
  schema created from metadata and foreign keys enforced
- The default session factory is pointed at that engine for the duration
  of the test, so services and routes resolve to it without wiring
- Auth tests use an app with MockJwtVerifier and tokens minted in helpers
- LLM calls go to FakeLLMRouter; adapter tests mock HTTP with respx
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Settings are read at import time by some modules (celery app); set defaults first
os.environ.setdefault("SCHOLAR_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTH_JWKS_URL", "http://localhost:9999/.well-known/jwks.json")
os.environ.setdefault("AUTH_ISSUER", "test-issuer")
os.environ.setdefault("AUTH_AUDIENCES", "test-audience")
os.environ.setdefault("LLM_PROVIDER", "ollama")

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from scholar.app import create_app
from scholar.config import clear_settings_cache
from scholar.db.engine import create_db_engine
from scholar.db.models import Base
from scholar.db.session import create_session_factory, set_session_factory
from tests.helpers import create_test_user_id
from tests.support.fake_llm import FakeLLMRouter
from tests.support.test_verifier import MockJwtVerifier


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database with the full schema."""
    engine = create_db_engine("sqlite+pysqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Generator[sessionmaker[Session], None, None]:
    """Session factory bound to the test engine, installed as the default."""
    factory = create_session_factory(engine)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """A session for arranging and inspecting rows directly."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_llm() -> FakeLLMRouter:
    return FakeLLMRouter()


@pytest.fixture
def client(fake_llm: FakeLLMRouter, session_factory) -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client without authentication.

    Suitable for public endpoints only.
    """
    app = create_app(skip_auth_middleware=True, llm_router=fake_llm)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def test_verifier() -> MockJwtVerifier:
    """Provide a test token verifier."""
    return MockJwtVerifier()


@pytest.fixture
def authenticated_app(fake_llm: FakeLLMRouter, session_factory, test_verifier):
    """FastAPI app with auth middleware using the test verifier and fake LLM."""
    return create_app(token_verifier=test_verifier, llm_router=fake_llm)


@pytest.fixture
def authenticated_client(authenticated_app) -> Generator[TestClient, None, None]:
    """Test client with auth middleware.

    Use auth_headers() to generate valid tokens for requests.
    """
    with TestClient(authenticated_app) as client:
        yield client


@pytest.fixture
def test_user_id() -> str:
    """Random user id for a test user."""
    return create_test_user_id()


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
