"""Chat streaming route.

POST /chat: submit one user message to a (possibly new) conversation and
receive the reply as Server-Sent Events.

Errors before the stream starts are regular JSON error responses:
    E_UNAUTHENTICATED (401), E_CONVERSATION_FORBIDDEN (403),
    E_CONVERSATION_ID_REQUIRED / E_INVALID_MESSAGE (400),
    E_UPSTREAM_UNAVAILABLE (503, retryable)
Errors after it starts end the stream with a done event carrying status=error.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from scholar.api.deps import get_chat_service
from scholar.auth.middleware import Viewer, get_viewer
from scholar.schemas.conversation import ChatRequest
from scholar.services.chat import ChatTurnService

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


@router.post("/chat")
async def chat(
    body: ChatRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    service: Annotated[ChatTurnService, Depends(get_chat_service)],
) -> StreamingResponse:
    """Stream the assistant reply; persistence runs after the body is flushed."""
    turn = await service.start_turn(body, viewer.user_id)

    return StreamingResponse(
        turn.events(),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
        background=BackgroundTask(turn.finalize),
    )
