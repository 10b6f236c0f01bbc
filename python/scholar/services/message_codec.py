"""Conversion between in-flight chat messages and stored message rows.

A chat message is an id, a role and an ordered list of typed parts
(``{"type": "text", "text": "..."}`` and any other part types the client
sends). Parts and metadata are serialized as JSON text and are otherwise
opaque to storage: unknown part types survive a round trip unchanged.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from scholar.db.models import Message, MessageRole
from scholar.errors import ApiErrorCode, InvalidRequestError
from scholar.services.llm.types import Turn

TEXT_PART_TYPE = "text"


@dataclass(frozen=True)
class ChatMessage:
    """One message of a conversation, independent of storage."""

    id: str
    role: MessageRole
    parts: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] | None = None
    tokens_used: int | None = None
    created_at: datetime | None = None


def _invalid(message: str) -> InvalidRequestError:
    return InvalidRequestError(ApiErrorCode.E_INVALID_MESSAGE, message)


def parse_role(value: Any) -> MessageRole:
    """Accept "user" / "USER" style role names."""
    if isinstance(value, MessageRole):
        return value
    if not isinstance(value, str):
        raise _invalid("Message role must be a string")
    try:
        return MessageRole(value.lower())
    except ValueError:
        raise _invalid(f"Unknown message role: {value}") from None


def validate_parts(parts: Any) -> list[dict[str, Any]]:
    """Check parts is a list of objects each carrying a string "type"."""
    if not isinstance(parts, list):
        raise _invalid("Message parts must be a list")
    for part in parts:
        if not isinstance(part, dict) or not isinstance(part.get("type"), str):
            raise _invalid("Every message part needs a string 'type'")
        if part["type"] == TEXT_PART_TYPE and not isinstance(part.get("text"), str):
            raise _invalid("Text parts need a string 'text'")
    return parts


def build_message(
    message_id: Any,
    role: Any,
    parts: Any,
    metadata: Any = None,
) -> ChatMessage:
    """Validate raw values and build a ChatMessage.

    Raises:
        InvalidRequestError: E_INVALID_MESSAGE on any malformed field.
    """
    if not isinstance(message_id, str) or not message_id.strip():
        raise _invalid("Message id is required")
    if metadata is not None and not isinstance(metadata, dict):
        raise _invalid("Message metadata must be an object")
    return ChatMessage(
        id=message_id,
        role=parse_role(role),
        parts=validate_parts(parts),
        metadata=metadata,
    )


def text_message(message_id: str, role: MessageRole, text: str, **kwargs: Any) -> ChatMessage:
    """Build a message with a single text part."""
    return ChatMessage(
        id=message_id,
        role=role,
        parts=[{"type": TEXT_PART_TYPE, "text": text}],
        **kwargs,
    )


def message_text(message: ChatMessage) -> str:
    """Concatenate the text parts of a message, separated by single spaces."""
    return " ".join(
        part["text"]
        for part in message.parts
        if part.get("type") == TEXT_PART_TYPE and isinstance(part.get("text"), str)
    )


def to_turn(message: ChatMessage) -> Turn:
    """Convert a message into a provider-agnostic turn."""
    return Turn(role=message.role.value, content=message_text(message))


def encode_message(message: ChatMessage) -> dict[str, Any]:
    """Map a ChatMessage to Message column values (without conversation_id)."""
    values: dict[str, Any] = {
        "id": message.id,
        "role": message.role.value,
        "content": json.dumps(message.parts, ensure_ascii=False),
        "metadata_json": (
            json.dumps(message.metadata, ensure_ascii=False)
            if message.metadata is not None
            else None
        ),
        "tokens_used": message.tokens_used,
    }
    if message.created_at is not None:
        values["created_at"] = message.created_at
    return values


def _decode_parts(content: str) -> list[dict[str, Any]]:
    try:
        parts = json.loads(content)
    except (TypeError, ValueError):
        parts = None
    if isinstance(parts, list) and all(isinstance(p, dict) for p in parts):
        return parts
    # Rows written before parts were introduced hold plain text
    return [{"type": TEXT_PART_TYPE, "text": content or ""}]


def _decode_metadata(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def decode_message(row: Message) -> ChatMessage:
    """Map a stored Message row back to a ChatMessage."""
    return ChatMessage(
        id=row.id,
        role=MessageRole(row.role),
        parts=_decode_parts(row.content),
        metadata=_decode_metadata(row.metadata_json),
        tokens_used=row.tokens_used,
        created_at=row.created_at,
    )


def message_to_dict(message: ChatMessage) -> dict[str, Any]:
    """JSON-ready representation used in API responses."""
    return {
        "id": message.id,
        "role": message.role.value,
        "parts": message.parts,
        "metadata": message.metadata,
        "tokens_used": message.tokens_used,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
