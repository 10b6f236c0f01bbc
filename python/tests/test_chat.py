"""Tests for chat turn orchestration (ChatTurnService / ChatTurn).

These drive the service directly on the event loop; test_chat_stream.py
covers the same flows through HTTP.
"""

import asyncio

import pytest

from sqlalchemy import func, select

from scholar.db.engine import create_db_engine
from scholar.db.models import Base, Conversation, Message, MessageRole
from scholar.db.session import create_session_factory
from scholar.errors import (
    ApiErrorCode,
    ForbiddenError,
    InvalidRequestError,
    UpstreamUnavailableError,
)
from scholar.schemas.conversation import ChatMessageIn, ChatRequest
from scholar.services.chat import ChatTurnService, derive_assistant_message_id
from scholar.services.context_builder import GENERIC_SYSTEM_PROMPT, ContextBuilder
from scholar.services.conversation_store import ConversationDefaults, ConversationStore
from scholar.services.llm import LLMError, LLMErrorClass
from scholar.services.message_codec import message_text, text_message
from scholar.services.persistence import PersistenceFinalizer
from scholar.services.stream_coordinator import StreamCoordinator
from scholar.services.title_generator import TitleGenerator
from tests.helpers import create_note, parse_sse
from tests.support.fake_llm import FakeLLMRouter


def _service(session_factory, router) -> ChatTurnService:
    store = ConversationStore(session_factory)
    return ChatTurnService(
        store=store,
        context_builder=ContextBuilder(session_factory),
        title_generator=TitleGenerator(router, model="qwen2.5:1.5b", timeout_s=1.0),
        coordinator=StreamCoordinator(router, buffer_size=16, timeout_s=5.0, max_tokens=64),
        finalizer=PersistenceFinalizer(store),
        default_model="qwen2.5:1.5b",
        default_temperature=0.7,
    )


def _request(conversation_id: str | None, message_id: str, text: str, **kwargs) -> ChatRequest:
    return ChatRequest(
        message=ChatMessageIn(id=message_id, parts=[{"type": "text", "text": text}]),
        conversation_id=conversation_id,
        **kwargs,
    )


async def _run_turn(service, request, user_id="user-a") -> list[tuple[str, dict]]:
    turn = await service.start_turn(request, user_id)
    body = "".join([chunk async for chunk in turn.events()])
    await turn.finalize()
    return parse_sse(body)


def _stored(session_factory, conversation_id="c1", user_id="user-a"):
    return ConversationStore(session_factory).find(conversation_id, user_id).messages


class TestAssistantMessageId:
    def test_deterministic(self):
        first = derive_assistant_message_id("c1", "m1")

        assert first == derive_assistant_message_id("c1", "m1")
        assert first != derive_assistant_message_id("c1", "m2")
        assert first.startswith("msg-")
        assert len(first) == len("msg-") + 16


class TestNewConversationTurn:
    @pytest.mark.asyncio
    async def test_first_message_creates_conversation_and_persists_pair(self, session_factory):
        router = FakeLLMRouter()
        service = _service(session_factory, router)

        events = await _run_turn(service, _request("c1", "m1", "What is photosynthesis?"))

        assert [e for e, _ in events] == ["meta", "delta", "delta", "done"]
        meta = events[0][1]
        assert meta["conversation_id"] == "c1"
        assert meta["is_new"] is True
        assert meta["title"] == "Photosynthesis basics"
        assert meta["assistant_message_id"] == derive_assistant_message_id("c1", "m1")
        assert events[-1][1] == {"status": "complete", "tokens_used": 15, "final_chars": 11}

        stored = _stored(session_factory)
        assert [m.id for m in stored] == ["m1", derive_assistant_message_id("c1", "m1")]
        assert [m.role for m in stored] == [MessageRole.user, MessageRole.assistant]
        assert message_text(stored[1]) == "Hello world"
        assert stored[1].tokens_used == 15

        request = router.stream_requests[0]
        assert request.messages[0].role == "system"
        assert request.messages[0].content == GENERIC_SYSTEM_PROMPT
        assert request.temperature == 0.7

    @pytest.mark.asyncio
    async def test_followup_sends_history_and_keeps_stored_settings(
        self, session_factory, db_session
    ):
        note = create_note(db_session, title="Cell structure", content="Cells have walls.")
        router = FakeLLMRouter()
        service = _service(session_factory, router)

        await _run_turn(
            service,
            _request(
                "c1", "m1", "What is a cell?", note_id=note.id, model="llama3", temperature=0.1
            ),
        )
        router.deltas = ("More",)
        events = await _run_turn(
            service, _request("c1", "m2", "And a wall?", model="ignored", temperature=1.9)
        )

        assert events[0][1]["is_new"] is False
        followup = router.stream_requests[1]
        assert followup.model_name == "llama3"
        assert followup.temperature == 0.1
        assert 'note titled "Cell structure"' in followup.messages[0].content
        assert [(t.role, t.content) for t in followup.messages[1:]] == [
            ("user", "What is a cell?"),
            ("assistant", "Hello world"),
            ("user", "And a wall?"),
        ]
        assert len(_stored(session_factory)) == 4
        # Title is generated once, at creation
        assert len(router.title_requests) == 1

    @pytest.mark.asyncio
    async def test_unknown_note_does_not_block_the_chat(self, session_factory, db_session):
        router = FakeLLMRouter()
        service = _service(session_factory, router)

        events = await _run_turn(service, _request("c1", "m1", "hello", note_id="no-such-note"))

        assert events[-1][1]["status"] == "complete"
        assert router.stream_requests[0].messages[0].content == GENERIC_SYSTEM_PROMPT
        assert db_session.get(Conversation, "c1").note_id is None
        assert len(_stored(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_reply_without_provider_usage_records_delta_count(self, session_factory):
        router = FakeLLMRouter(deltas=("Light", " to", " sugar"), usage=None)
        service = _service(session_factory, router)

        events = await _run_turn(service, _request("c1", "m1", "hello"))

        assert events[-1][1]["tokens_used"] == 3
        assert _stored(session_factory)[1].tokens_used == 3


class TestIdempotentRetries:
    @pytest.mark.asyncio
    async def test_resubmitted_message_replays_stored_reply(self, session_factory):
        router = FakeLLMRouter()
        service = _service(session_factory, router)
        await _run_turn(service, _request("c1", "m1", "What is photosynthesis?"))

        events = await _run_turn(service, _request("c1", "m1", "What is photosynthesis?"))

        assert events[0][1]["replayed"] is True
        assert events[1] == ("delta", {"delta": "Hello world"})
        assert events[2][1]["status"] == "complete"
        assert len(router.stream_requests) == 1
        assert len(_stored(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_lost_reply_is_regenerated_from_earlier_history(self, session_factory):
        store = ConversationStore(session_factory)
        store.resolve_or_create(
            "c1", "user-a", ConversationDefaults(title="t", model="m", temperature=0.5)
        )
        store.append_messages("c1", [text_message("m1", MessageRole.user, "Question?")])
        router = FakeLLMRouter()

        await _run_turn(_service(session_factory, router), _request("c1", "m1", "Question?"))

        request = router.stream_requests[0]
        assert [t.role for t in request.messages] == ["system", "user"]
        stored = _stored(session_factory)
        assert [m.id for m in stored] == ["m1", derive_assistant_message_id("c1", "m1")]


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_conversation_id(self, session_factory):
        service = _service(session_factory, FakeLLMRouter())

        with pytest.raises(InvalidRequestError) as exc_info:
            await service.start_turn(_request(None, "m1", "hi"), "user-a")

        assert exc_info.value.code == ApiErrorCode.E_CONVERSATION_ID_REQUIRED

    @pytest.mark.asyncio
    async def test_only_user_messages_accepted(self, session_factory):
        service = _service(session_factory, FakeLLMRouter())
        request = ChatRequest(
            message=ChatMessageIn(
                id="m1", role="assistant", parts=[{"type": "text", "text": "hi"}]
            ),
            conversation_id="c1",
        )

        with pytest.raises(InvalidRequestError) as exc_info:
            await service.start_turn(request, "user-a")

        assert exc_info.value.code == ApiErrorCode.E_INVALID_MESSAGE

    @pytest.mark.asyncio
    async def test_other_users_conversation_forbidden(self, session_factory):
        service = _service(session_factory, FakeLLMRouter())
        await _run_turn(service, _request("c1", "m1", "hi"), user_id="user-a")

        with pytest.raises(ForbiddenError):
            await service.start_turn(_request("c1", "m9", "mine now"), "user-b")

    @pytest.mark.asyncio
    async def test_upstream_down_before_first_token(self, session_factory):
        router = FakeLLMRouter(stream_error=LLMError(LLMErrorClass.PROVIDER_DOWN, "refused"))
        service = _service(session_factory, router)

        with pytest.raises(UpstreamUnavailableError):
            await service.start_turn(_request("c1", "m1", "hi"), "user-a")

        assert _stored(session_factory) == []

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_user_message_only(self, session_factory):
        router = FakeLLMRouter(deltas=("partial", "never"), fail_after=1)
        service = _service(session_factory, router)

        events = await _run_turn(service, _request("c1", "m1", "hi"))

        assert events[1] == ("delta", {"delta": "partial"})
        assert events[-1] == (
            "done",
            {"status": "error", "error_code": "E_UPSTREAM_UNAVAILABLE", "retryable": True},
        )
        assert [m.id for m in _stored(session_factory)] == ["m1"]

    @pytest.mark.asyncio
    async def test_client_disconnect_discards_partial_reply(self, session_factory):
        hold = asyncio.Event()
        router = FakeLLMRouter(deltas=("first", "second"), hold=hold)
        service = _service(session_factory, router)
        turn = await service.start_turn(_request("c1", "m1", "hi"), "user-a")

        events = turn.events()
        await events.__anext__()  # meta
        await events.__anext__()  # first delta
        await events.aclose()
        await turn.finalize()
        await asyncio.sleep(0.01)

        assert router.stream_closed is True
        assert await turn.stream_run.usage is None
        assert [m.id for m in _stored(session_factory)] == ["m1"]


class TestConcurrentFirstSubmissions:
    @pytest.fixture
    def file_session_factory(self, tmp_path):
        """Separate connections per thread, so the two turns really race."""
        engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(engine)
        yield create_session_factory(engine)
        engine.dispose()

    @pytest.mark.asyncio
    async def test_same_unseen_id_yields_one_conversation_and_one_pair(
        self, file_session_factory
    ):
        router = FakeLLMRouter()
        request = _request("c1", "m1", "Explain normalization")

        results = await asyncio.gather(
            _run_turn(_service(file_session_factory, router), request),
            _run_turn(_service(file_session_factory, router), request),
        )

        assert sorted(events[0][1]["is_new"] for events in results) == [False, True]
        assert all(events[-1][1]["status"] == "complete" for events in results)
        with file_session_factory() as db:
            assert db.scalar(select(func.count()).select_from(Conversation)) == 1
            messages = db.scalars(select(Message).order_by(Message.created_at)).all()
        assert [(m.id, m.role) for m in messages] == [
            ("m1", MessageRole.user.value),
            (derive_assistant_message_id("c1", "m1"), MessageRole.assistant.value),
        ]
        assert messages[1].tokens_used is not None
