"""Chat turn orchestration: one submitted message in, one streamed reply out.

Turn state machine (each transition is logged as chat_turn_state):

    RESOLVING ─┬─> CREATING ─> CONTEXT_BUILT ─┐
               └─> FOUND ────> CONTEXT_REUSED ─┴─> STREAMING ─> FINALIZING ─> DONE
    RESOLVING / STREAMING ─> FAILED

Idempotency:
- The conversation id is client supplied; creation is race-safe in the store.
- The assistant reply id is derived from (conversation id, user message id),
  so duplicate submissions of one message converge on one reply row.
- If that reply is already stored the turn is a replay: the stored reply is
  streamed back and nothing is generated or written.
- If only the user message is stored (an earlier finalize was lost) the reply
  is generated from the history before it and only the reply is written.

SSE Events:
- meta: conversation_id, user_message_id, assistant_message_id, title, model, is_new, replayed
- delta: {"delta": "text chunk"}
- done: {"status": "complete", "tokens_used": N, "final_chars": N}
        {"status": "error", "error_code": "...", "retryable": bool}

Persistence runs after the response body is flushed. A turn whose stream
did not complete persists the user message only, never a partial reply.
"""

import asyncio
import hashlib
import json
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

from starlette.concurrency import run_in_threadpool

from scholar.db.models import Conversation, MessageRole
from scholar.errors import ApiError, ApiErrorCode, InvalidRequestError
from scholar.logging import get_logger, set_conversation_id
from scholar.schemas.conversation import ChatRequest, StreamDoneEvent, StreamMetaEvent
from scholar.services.context_builder import ContextBuilder
from scholar.services.conversation_store import ConversationDefaults, ConversationStore
from scholar.services.message_codec import (
    ChatMessage,
    build_message,
    message_text,
    text_message,
)
from scholar.services.persistence import PersistenceFinalizer
from scholar.services.stream_coordinator import KEEPALIVE, StreamCoordinator, StreamRun
from scholar.services.title_generator import TitleGenerator

logger = get_logger(__name__)

# Finalize tasks spawned for interrupted streams; held so they are not collected mid-flight
_background_finalizers: set[asyncio.Task] = set()


class TurnState(str, Enum):
    RESOLVING = "RESOLVING"
    CREATING = "CREATING"
    CONTEXT_BUILT = "CONTEXT_BUILT"
    FOUND = "FOUND"
    CONTEXT_REUSED = "CONTEXT_REUSED"
    STREAMING = "STREAMING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"


def format_sse_event(event: str, data: dict) -> str:
    """Format data as an SSE event."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def derive_assistant_message_id(conversation_id: str, user_message_id: str) -> str:
    """Stable reply id for a user message: "msg-" + 16 hex chars."""
    digest = hashlib.sha256(f"{conversation_id}:{user_message_id}".encode()).hexdigest()
    return f"msg-{digest[:16]}"


def _log_state(state: TurnState, **fields) -> None:
    logger.info("chat_turn_state", state=state.value, **fields)


@dataclass
class ChatTurn:
    """A resolved turn, ready to stream. Produced by ChatTurnService.start_turn."""

    conversation: Conversation
    is_new: bool
    user_message: ChatMessage
    assistant_message_id: str
    prior_messages: list[ChatMessage]
    finalizer: PersistenceFinalizer
    stream_run: StreamRun | None = None
    replay_message: ChatMessage | None = None
    chunks: list[str] = field(default_factory=list)
    _finalize_task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _started_at: float = field(default_factory=time.monotonic, init=False, repr=False)

    @property
    def replayed(self) -> bool:
        return self.replay_message is not None

    @property
    def assistant_text(self) -> str:
        return "".join(self.chunks)

    def meta(self) -> StreamMetaEvent:
        return StreamMetaEvent(
            conversation_id=self.conversation.id,
            user_message_id=self.user_message.id,
            assistant_message_id=self.assistant_message_id,
            title=self.conversation.title,
            model=self.conversation.model,
            is_new=self.is_new,
            replayed=self.replayed,
        )

    async def events(self) -> AsyncIterator[str]:
        """SSE body for the turn."""
        yield format_sse_event("meta", self.meta().model_dump())

        if self.replay_message is not None:
            text = message_text(self.replay_message)
            if text:
                yield format_sse_event("delta", {"delta": text})
            yield format_sse_event(
                "done",
                StreamDoneEvent(
                    status="complete",
                    tokens_used=self.replay_message.tokens_used,
                    final_chars=len(text),
                ).model_dump(exclude_none=True),
            )
            return

        done: StreamDoneEvent
        try:
            async for delta in self.stream_run.tokens():
                if delta == KEEPALIVE:
                    yield ": keepalive\n\n"
                    continue
                self.chunks.append(delta)
                yield format_sse_event("delta", {"delta": delta})

            usage = await self.stream_run.usage
            done = StreamDoneEvent(
                status="complete",
                tokens_used=usage.total_tokens if usage else None,
                final_chars=len(self.assistant_text),
            )
        except ApiError as e:
            _log_state(TurnState.FAILED, error_code=e.code.value)
            done = StreamDoneEvent(status="error", error_code=e.code.value, retryable=e.retryable)
        except asyncio.CancelledError:
            logger.info("chat_client_disconnect", assistant_message_id=self.assistant_message_id)
            raise
        finally:
            self._end_stream()

        yield format_sse_event("done", done.model_dump(exclude_none=True))

    def _end_stream(self) -> None:
        completed = self.stream_run.completed
        if not completed:
            # The token iterator may be left suspended; stop the provider explicitly
            self.stream_run.cancel()
        logger.info(
            "stream_end",
            assistant_message_id=self.assistant_message_id,
            total_ms=int((time.monotonic() - self._started_at) * 1000),
            chars_generated=len(self.assistant_text),
            status="complete" if completed else "incomplete",
        )
        # Interrupted streams never reach the response's background task
        if not completed:
            task = self.schedule_finalize()
            _background_finalizers.add(task)
            task.add_done_callback(_background_finalizers.discard)

    def messages_after_turn(self) -> list[ChatMessage]:
        """Prior history plus what this turn produced.

        The reply is included only when its stream completed.
        """
        messages = [*self.prior_messages, self.user_message]
        if self.stream_run is not None and self.stream_run.completed:
            messages.append(
                text_message(self.assistant_message_id, MessageRole.assistant, self.assistant_text)
            )
        elif self.stream_run is not None:
            logger.info(
                "partial_reply_discarded",
                assistant_message_id=self.assistant_message_id,
                discarded_chars=len(self.assistant_text),
            )
        return messages

    def schedule_finalize(self) -> asyncio.Task:
        if self._finalize_task is None:
            self._finalize_task = asyncio.create_task(self._finalize())
        return self._finalize_task

    async def finalize(self) -> None:
        """Persist the turn once. Safe to call from several places."""
        await self.schedule_finalize()

    async def _finalize(self) -> None:
        if self.replayed:
            _log_state(TurnState.DONE, replayed=True)
            return

        _log_state(TurnState.FINALIZING)
        usage = None
        if self.stream_run is not None and self.stream_run.usage.done():
            usage = self.stream_run.usage.result()
        await self.finalizer.commit(
            self.conversation.id,
            self.prior_messages,
            self.messages_after_turn(),
            usage,
        )
        _log_state(TurnState.DONE)


class ChatTurnService:
    """Runs the pre-stream part of a turn and hands back a ChatTurn."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        context_builder: ContextBuilder,
        title_generator: TitleGenerator,
        coordinator: StreamCoordinator,
        finalizer: PersistenceFinalizer,
        default_model: str,
        default_temperature: float,
    ):
        self._store = store
        self._context_builder = context_builder
        self._title_generator = title_generator
        self._coordinator = coordinator
        self._finalizer = finalizer
        self._default_model = default_model
        self._default_temperature = default_temperature

    async def start_turn(self, request: ChatRequest, user_id: str) -> ChatTurn:
        """Resolve the conversation and start generating.

        Raises:
            InvalidRequestError: Missing conversation id or malformed message.
            ForbiddenError: The conversation belongs to another user.
            UpstreamUnavailableError: The provider failed before the first token.
        """
        conversation_id = (request.conversation_id or "").strip()
        if not conversation_id:
            raise InvalidRequestError(
                ApiErrorCode.E_CONVERSATION_ID_REQUIRED, "conversation_id is required"
            )

        incoming = request.message
        user_message = build_message(incoming.id, incoming.role, incoming.parts, incoming.metadata)
        if user_message.role != MessageRole.user:
            raise InvalidRequestError(
                ApiErrorCode.E_INVALID_MESSAGE, "Only user messages can be submitted"
            )

        set_conversation_id(conversation_id)
        _log_state(TurnState.RESOLVING)

        try:
            resolved = await run_in_threadpool(self._store.find, conversation_id, user_id)
            if resolved is None:
                _log_state(TurnState.CREATING)
                resolved = await self._create(conversation_id, user_id, request, user_message)
                _log_state(
                    TurnState.CONTEXT_BUILT if resolved.is_new else TurnState.CONTEXT_REUSED
                )
            else:
                _log_state(TurnState.FOUND)
                _log_state(TurnState.CONTEXT_REUSED)
        except ApiError as e:
            _log_state(TurnState.FAILED, error_code=e.code.value)
            raise

        conversation = resolved.conversation
        prior = resolved.messages
        assistant_message_id = derive_assistant_message_id(conversation_id, user_message.id)

        turn = ChatTurn(
            conversation=conversation,
            is_new=resolved.is_new,
            user_message=user_message,
            assistant_message_id=assistant_message_id,
            prior_messages=prior,
            finalizer=self._finalizer,
        )

        stored = {m.id: m for m in prior}
        if assistant_message_id in stored:
            logger.info("chat_turn_replayed", assistant_message_id=assistant_message_id)
            turn.replay_message = stored[assistant_message_id]
            return turn

        history = prior
        if user_message.id in stored:
            # Earlier finalize stored the question but lost the reply
            index = next(i for i, m in enumerate(prior) if m.id == user_message.id)
            history = prior[:index]
            logger.info("chat_turn_regenerating", assistant_message_id=assistant_message_id)

        system_prompt = conversation.system_prompt
        if system_prompt is None:
            system_prompt = await run_in_threadpool(
                self._context_builder.build,
                note_id=conversation.note_id,
                course_id=conversation.course_id,
            )

        _log_state(TurnState.STREAMING, history_count=len(history))
        stream_run = self._coordinator.run(
            model=conversation.model,
            system_prompt=system_prompt,
            history=history,
            new_message=user_message,
            temperature=conversation.temperature,
        )
        try:
            await stream_run.prime()
        except ApiError as e:
            _log_state(TurnState.FAILED, error_code=e.code.value)
            raise

        turn.stream_run = stream_run
        return turn

    async def _create(
        self,
        conversation_id: str,
        user_id: str,
        request: ChatRequest,
        user_message: ChatMessage,
    ):
        title = await self._title_generator.generate(message_text(user_message))
        context = await run_in_threadpool(
            self._context_builder.resolve,
            note_id=request.note_id,
            course_id=request.course_id,
        )
        defaults = ConversationDefaults(
            title=title,
            model=request.model or self._default_model,
            temperature=(
                request.temperature
                if request.temperature is not None
                else self._default_temperature
            ),
            note_id=context.note_id,
            course_id=context.course_id,
            system_prompt=context.system_prompt,
        )
        return await run_in_threadpool(
            self._store.resolve_or_create, conversation_id, user_id, defaults
        )
