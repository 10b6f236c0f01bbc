"""Conversation read endpoints: list and detail.

Every read is scoped to the viewer. A conversation owned by someone else
is reported as E_CONVERSATION_NOT_FOUND, so other users' ids stay hidden.
"""

from scholar.db.models import Conversation
from scholar.schemas.conversation import (
    ConversationDetailOut,
    ConversationOut,
    MessageOut,
    PageInfo,
)
from scholar.services.conversation_store import ConversationStore
from scholar.services.message_codec import ChatMessage


def conversation_to_out(conversation: Conversation) -> ConversationOut:
    return ConversationOut.model_validate(conversation)


def message_to_out(message: ChatMessage) -> MessageOut:
    return MessageOut(
        id=message.id,
        role=message.role.value,
        parts=message.parts,
        metadata=message.metadata,
        tokens_used=message.tokens_used,
        created_at=message.created_at,
    )


def list_conversations(
    store: ConversationStore,
    viewer_id: str,
    *,
    course_id: str | None = None,
    note_id: str | None = None,
    limit: int,
) -> tuple[list[ConversationOut], PageInfo]:
    """Most recently updated conversations first, optionally filtered by course or note."""
    conversations, total = store.list_conversations(
        viewer_id, course_id=course_id, note_id=note_id, limit=limit
    )
    page = PageInfo(total=total, has_more=total > len(conversations))
    return [conversation_to_out(c) for c in conversations], page


def get_conversation(
    store: ConversationStore, viewer_id: str, conversation_id: str
) -> ConversationDetailOut:
    """Conversation with its messages in turn order.

    Raises:
        NotFoundError: E_CONVERSATION_NOT_FOUND if missing or not owned.
    """
    resolved = store.get_conversation(conversation_id, viewer_id)
    out = conversation_to_out(resolved.conversation)
    return ConversationDetailOut(
        **out.model_dump(),
        messages=[message_to_out(m) for m in resolved.messages],
    )
