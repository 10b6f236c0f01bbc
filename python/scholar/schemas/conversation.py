"""Conversation, message and chat Pydantic schemas.

Request bodies accept snake_case field names and the camelCase aliases sent
by the web client (conversationId, courseId, noteId).
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Valid message roles - must match DB constraint
MESSAGE_ROLES = Literal["user", "assistant", "system"]

MAX_CONVERSATION_ID_LENGTH = 128
MAX_PARTS = 100


# =============================================================================
# Response Schemas
# =============================================================================


class ConversationOut(BaseModel):
    """Response schema for a conversation."""

    id: str
    title: str
    model: str
    temperature: float
    note_id: str | None = None
    course_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageOut(BaseModel):
    """Response schema for a message. Messages are immutable once stored."""

    id: str
    role: str  # "user" | "assistant" | "system"
    parts: list[dict[str, Any]]
    metadata: dict[str, Any] | None = None
    tokens_used: int | None = None
    created_at: datetime | None = None


class ConversationDetailOut(ConversationOut):
    messages: list[MessageOut]


class PageInfo(BaseModel):
    total: int
    has_more: bool


class ConversationListResponse(BaseModel):
    data: list[ConversationOut]
    page: PageInfo


# =============================================================================
# Request Schemas
# =============================================================================


class ChatMessageIn(BaseModel):
    """A single message as sent by the client.

    Part contents are validated by the message codec, which keeps unknown
    part types intact.
    """

    id: str = Field(min_length=1, max_length=128)
    role: str = "user"
    parts: list[dict[str, Any]] = Field(max_length=MAX_PARTS)
    metadata: dict[str, Any] | None = None


class ChatRequest(BaseModel):
    """Request schema for POST /chat.

    conversation_id is optional at the schema level so the service can
    reject its absence with a specific error code.
    """

    message: ChatMessageIn
    conversation_id: str | None = Field(
        default=None, alias="conversationId", max_length=MAX_CONVERSATION_ID_LENGTH
    )
    course_id: str | None = Field(default=None, alias="courseId")
    note_id: str | None = Field(default=None, alias="noteId")
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Stream Events
# =============================================================================


class StreamMetaEvent(BaseModel):
    """SSE meta event at stream start."""

    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    title: str
    model: str
    is_new: bool
    replayed: bool = False


class StreamDoneEvent(BaseModel):
    """SSE done event at stream end."""

    status: Literal["complete", "error"]
    tokens_used: int | None = None
    final_chars: int | None = None
    error_code: str | None = None
    retryable: bool | None = None
