"""FastAPI dependencies for route handlers.

Services are assembled per request from app-scoped resources (the shared
LLM router and the session factory) so tests can swap either.
"""

from fastapi import Request

from scholar.config import get_settings
from scholar.db.session import get_session_factory
from scholar.services.chat import ChatTurnService
from scholar.services.context_builder import ContextBuilder
from scholar.services.conversation_store import ConversationStore
from scholar.services.llm import LLMRouter
from scholar.services.persistence import PersistenceFinalizer
from scholar.services.stream_coordinator import StreamCoordinator
from scholar.services.title_generator import TitleGenerator

__all__ = [
    "get_chat_service",
    "get_conversation_store",
    "get_llm_router",
    "get_session_factory",
]

KEEPALIVE_INTERVAL_SECONDS = 15.0


def get_llm_router(request: Request) -> LLMRouter:
    """Get the shared LLM router from app state (created in the app lifespan)."""
    return request.app.state.llm_router


def get_conversation_store() -> ConversationStore:
    return ConversationStore(get_session_factory())


def get_chat_service(request: Request) -> ChatTurnService:
    settings = get_settings()
    router = get_llm_router(request)
    session_factory = get_session_factory()
    store = ConversationStore(session_factory)

    return ChatTurnService(
        store=store,
        context_builder=ContextBuilder(session_factory),
        title_generator=TitleGenerator(
            router,
            model=settings.default_model,
            timeout_s=settings.title_timeout_s,
            max_tokens=settings.title_max_tokens,
        ),
        coordinator=StreamCoordinator(
            router,
            buffer_size=settings.stream_buffer_size,
            timeout_s=settings.llm_timeout_s,
            max_tokens=settings.llm_max_tokens,
            keepalive_s=KEEPALIVE_INTERVAL_SECONDS,
        ),
        finalizer=PersistenceFinalizer(store),
        default_model=settings.default_model,
        default_temperature=settings.default_temperature,
    )
