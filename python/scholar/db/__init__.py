"""Database module for Scholar.

Provides engine creation, the shared session factory, and ORM models.
"""

from scholar.db.engine import create_db_engine, get_engine
from scholar.db.models import (
    Base,
    Conversation,
    Course,
    Message,
    MessageRole,
    Note,
)
from scholar.db.session import get_session_factory, set_session_factory

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "set_session_factory",
    # Base
    "Base",
    # Enums
    "MessageRole",
    # Models
    "Conversation",
    "Message",
    "Course",
    "Note",
]
