"""SQLAlchemy ORM models for Scholar.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Column types are kept portable (no dialect-specific types) so the same
metadata backs PostgreSQL in production and SQLite in unit tests.

Ownership:
    conversations, messages: written by the chat subsystem (append-only)
    courses, notes: owned by the course/notes features; read-only here
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utcnow() -> datetime:
    """Timezone-aware current time, used for application-assigned timestamps."""
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, PyEnum):
    """Author of a message. Stored as lowercase text."""

    user = "user"
    assistant = "assistant"
    system = "system"


# =============================================================================
# Read-only collaborators
# =============================================================================


class Course(Base):
    """Course model - only the title is consumed by chat."""

    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class Note(Base):
    """Note model - content is the editor's JSON document snapshot."""

    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    course_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Chat
# =============================================================================


class Conversation(Base):
    """Conversation model - a thread of messages owned by one user.

    The primary key is supplied by the client and doubles as the
    idempotency key for creation.
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    temperature: Mapped[float] = mapped_column(Float, nullable=False)
    note_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=True,
    )
    course_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=True,
    )
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "temperature >= 0 AND temperature <= 2",
            name="ck_conversations_temperature_range",
        ),
        Index("ix_conversations_user_updated", "user_id", "updated_at"),
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )


class Message(Base):
    """Message model - a single message in a conversation.

    content holds the JSON-encoded list of typed parts; metadata holds a
    JSON-encoded object. Both are opaque to the store.
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="ck_messages_role",
        ),
        CheckConstraint(
            "tokens_used IS NULL OR tokens_used >= 0",
            name="ck_messages_tokens_used_nonneg",
        ),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")
