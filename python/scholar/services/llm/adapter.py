"""Abstract base class for LLM adapters.

- Async adapters with httpx.AsyncClient
- No retries inside adapters
- No DB access
- No logging of request/response bodies
- Raw provider errors bubble up to router for classification
- Each adapter handles Turn → provider format conversion internally
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from scholar.services.llm.types import LLMChunk, LLMRequest, LLMResponse


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    provider: str = "unknown"

    def __init__(self, client: httpx.AsyncClient):
        """Initialize adapter with shared HTTP client.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
        """
        self._client = client

    @abstractmethod
    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: float,
    ) -> LLMResponse:
        """Non-streaming generation. Returns complete response.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
        """
        pass

    @abstractmethod
    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: float,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming generation. Yields chunks until done=True.

        Closing the generator early closes the underlying HTTP response,
        so the provider stops sending tokens.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: If stream ends without proper terminal marker.
        """
        pass
        # This is an abstract async generator, must yield to be valid
        yield  # type: ignore

    @abstractmethod
    async def list_models(self, *, api_key: str | None, timeout_s: float) -> list[str]:
        """Return the model identifiers the provider currently serves."""
        pass
