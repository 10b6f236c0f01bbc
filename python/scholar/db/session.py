"""Session factory shared by the services.

Services open short-lived sessions from the default factory. Tests swap it
for one bound to their own engine with set_session_factory().
"""

from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from scholar.db.engine import get_engine


def create_session_factory(engine: Any = None) -> sessionmaker[Session]:
    """Create a session factory bound to an engine.

    Args:
        engine: SQLAlchemy engine. If None, uses the default engine.
    """
    if engine is None:
        engine = get_engine()

    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# Default session factory - created lazily
_SessionLocal: sessionmaker[Session] | None = None


def get_session_factory() -> sessionmaker[Session]:
    """Get or create the default session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = create_session_factory()
    return _SessionLocal


def set_session_factory(factory: sessionmaker[Session] | None) -> None:
    """Replace the default session factory (tests bind it to their own engine)."""
    global _SessionLocal
    _SessionLocal = factory

