"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from scholar.schemas.conversation import (
    ChatMessageIn,
    ChatRequest,
    ConversationDetailOut,
    ConversationListResponse,
    ConversationOut,
    MessageOut,
    PageInfo,
    StreamDoneEvent,
    StreamMetaEvent,
)

__all__ = [
    # Conversations
    "ConversationOut",
    "ConversationDetailOut",
    "ConversationListResponse",
    "MessageOut",
    "PageInfo",
    # Chat
    "ChatMessageIn",
    "ChatRequest",
    "StreamMetaEvent",
    "StreamDoneEvent",
]
