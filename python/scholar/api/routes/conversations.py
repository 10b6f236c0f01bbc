"""Conversation read routes.

Routes are transport-only: each calls exactly one service function.
All routes require authentication.
Response envelope: {"data": ...} or {"data": [...], "page": {...}}
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from scholar.api.deps import get_conversation_store
from scholar.auth.middleware import Viewer, get_viewer
from scholar.responses import success_response
from scholar.services import conversations as conversations_service
from scholar.services.conversation_store import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    ConversationStore,
)

router = APIRouter(tags=["conversations"])


@router.get("/conversations")
def list_conversations(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    store: Annotated[ConversationStore, Depends(get_conversation_store)],
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    course_id: str | None = Query(default=None),
    note_id: str | None = Query(default=None),
) -> dict:
    """List the viewer's conversations, ordered by updated_at DESC."""
    conversations, page = conversations_service.list_conversations(
        store,
        viewer.user_id,
        course_id=course_id,
        note_id=note_id,
        limit=limit,
    )
    return success_response(
        [c.model_dump(mode="json") for c in conversations],
        page=page.model_dump(),
    )


@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    store: Annotated[ConversationStore, Depends(get_conversation_store)],
) -> dict:
    """Get one conversation with its messages.

    Errors:
        E_CONVERSATION_NOT_FOUND (404): Missing or owned by another user.
    """
    conversation = conversations_service.get_conversation(store, viewer.user_id, conversation_id)
    return success_response(conversation.model_dump(mode="json"))
