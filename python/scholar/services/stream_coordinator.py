"""Bridges one provider token stream to one client token stream.

A producer task reads the provider stream through the LLM router and puts
text deltas on a bounded asyncio.Queue; the HTTP response consumes them.
When the queue is full the producer suspends, which stops it reading the
upstream HTTP body, so a slow client slows the provider read instead of
growing memory.

Outcomes:
- natural completion: the consumer drains the end marker, ``completed`` is
  set and ``usage`` resolves to the provider's usage; a provider that sends
  none gets one completion token counted per streamed delta
- early stop (client gone or ``cancel()``): the producer task is cancelled,
  which closes the upstream response, and ``usage`` resolves to None
- provider failure: the consumer raises UpstreamUnavailableError
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass

from scholar.errors import UpstreamUnavailableError
from scholar.logging import get_logger
from scholar.services.llm import LLMError, LLMErrorClass, LLMRequest, LLMRouter, LLMUsage, Turn
from scholar.services.message_codec import ChatMessage, to_turn

logger = get_logger(__name__)

# Yielded by tokens() when no delta arrived within the keepalive interval
KEEPALIVE = ""


@dataclass(frozen=True)
class _End:
    usage: LLMUsage | None


@dataclass(frozen=True)
class _Failure:
    error: LLMError


def build_turns(
    system_prompt: str | None,
    history: Sequence[ChatMessage],
    new_message: ChatMessage,
) -> list[Turn]:
    """System turn, then prior turns in order, then the new message."""
    turns = []
    if system_prompt:
        turns.append(Turn(role="system", content=system_prompt))
    turns.extend(to_turn(m) for m in history)
    turns.append(to_turn(new_message))
    return turns


def _estimated_usage(delta_count: int) -> LLMUsage:
    """Usage for a provider that reported none: one token per streamed delta."""
    logger.info("usage_estimated", completion_tokens=delta_count)
    return LLMUsage(prompt_tokens=None, completion_tokens=delta_count, total_tokens=delta_count)


class StreamRun:
    """One in-flight generation. Created and started by StreamCoordinator.run()."""

    def __init__(
        self,
        router: LLMRouter,
        request: LLMRequest,
        *,
        buffer_size: int,
        timeout_s: float,
        keepalive_s: float | None = None,
    ):
        self._router = router
        self._request = request
        self._timeout_s = timeout_s
        self._keepalive_s = keepalive_s
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._primed: list[object] = []
        self._task: asyncio.Task | None = None
        self.usage: asyncio.Future[LLMUsage | None] = asyncio.get_running_loop().create_future()
        self.completed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        usage = None
        delta_count = 0
        try:
            async with aclosing(
                self._router.generate_stream(
                    self._request, timeout_s=self._timeout_s, operation="chat"
                )
            ) as stream:
                async for chunk in stream:
                    if chunk.delta_text:
                        delta_count += 1
                        await self._queue.put(chunk.delta_text)
                    if chunk.done:
                        usage = chunk.usage or _estimated_usage(delta_count)
                        break
        except LLMError as e:
            await self._queue.put(_Failure(e))
            return
        except Exception as e:
            logger.exception("stream_producer_failed", error_type=type(e).__name__)
            await self._queue.put(
                _Failure(LLMError(LLMErrorClass.PROVIDER_DOWN, "Stream producer failed"))
            )
            return
        await self._queue.put(_End(usage))

    async def _next(self) -> object:
        if self._primed:
            return self._primed.pop()
        if self._keepalive_s is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=self._keepalive_s)
        except TimeoutError:
            return KEEPALIVE

    def _fail(self, failure: _Failure) -> UpstreamUnavailableError:
        self._resolve_usage(None)
        return UpstreamUnavailableError(
            message=f"Completion provider unavailable ({failure.error.error_class.value})"
        )

    async def prime(self) -> None:
        """Wait for the first event so failures before any token raise here.

        Raises:
            UpstreamUnavailableError: The provider failed before the first token.
        """
        item = await self._next()
        while item == KEEPALIVE:
            item = await self._next()
        if isinstance(item, _Failure):
            raise self._fail(item) from item.error
        self._primed.append(item)

    async def tokens(self) -> AsyncIterator[str]:
        """Deltas in provider order; KEEPALIVE while the provider is idle.

        Raises:
            UpstreamUnavailableError: The provider failed mid-stream.
        """
        try:
            while True:
                item = await self._next()
                if isinstance(item, _End):
                    self.completed = True
                    self._resolve_usage(item.usage)
                    return
                if isinstance(item, _Failure):
                    raise self._fail(item) from item.error
                yield item
        finally:
            if not self.completed:
                self.cancel()

    def cancel(self) -> None:
        """Stop the producer and the upstream request. Idempotent."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("stream_cancelled")
        self._resolve_usage(None)

    def _resolve_usage(self, usage: LLMUsage | None) -> None:
        if not self.usage.done():
            self.usage.set_result(usage)


class StreamCoordinator:
    """Starts generations with shared limits (buffer size, timeouts)."""

    def __init__(
        self,
        router: LLMRouter,
        *,
        buffer_size: int,
        timeout_s: float,
        max_tokens: int,
        keepalive_s: float | None = None,
    ):
        self._router = router
        self._buffer_size = buffer_size
        self._timeout_s = timeout_s
        self._max_tokens = max_tokens
        self._keepalive_s = keepalive_s

    def run(
        self,
        *,
        model: str,
        system_prompt: str | None,
        history: Sequence[ChatMessage],
        new_message: ChatMessage,
        temperature: float | None,
    ) -> StreamRun:
        """Start generating a reply to new_message. Must be called on the event loop."""
        request = LLMRequest(
            model_name=model,
            messages=build_turns(system_prompt, history, new_message),
            max_tokens=self._max_tokens,
            temperature=temperature,
        )
        stream_run = StreamRun(
            self._router,
            request,
            buffer_size=self._buffer_size,
            timeout_s=self._timeout_s,
            keepalive_s=self._keepalive_s,
        )
        stream_run.start()
        return stream_run
