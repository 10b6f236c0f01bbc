"""LLM router for adapter selection and error normalization.

- Resolves adapter based on provider name ("ollama" or "openai")
- Wraps adapter calls with error normalization (one place, not per adapter)
- Emits llm.request.started / llm.request.finished / llm.request.failed events,
  all through safe_kv() so message content never reaches the logs

Error handling:
- Provider 401/403 → E_LLM_INVALID_KEY
- Provider 429 → E_LLM_RATE_LIMIT
- Timeout → E_LLM_TIMEOUT
- Context too large → E_LLM_CONTEXT_TOO_LARGE
- Other → E_LLM_PROVIDER_DOWN
"""

import time
from collections.abc import AsyncIterator

import httpx

from scholar.config import LLMProvider, Settings
from scholar.logging import get_logger
from scholar.services.llm.adapter import LLMAdapter
from scholar.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from scholar.services.llm.openai_compat import OpenAICompatibleAdapter
from scholar.services.llm.types import LLMChunk, LLMRequest, LLMResponse
from scholar.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 45.0
HEALTH_TIMEOUT_S = 5.0
OPENAI_BASE_URL = "https://api.openai.com/v1"


class LLMRouter:
    """Routes LLM requests to the configured provider adapter."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        default_provider: str = LLMProvider.OLLAMA.value,
        ollama_base_url: str = "http://localhost:11434",
        openai_api_key: str | None = None,
    ):
        """Initialize router with shared HTTP client.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
            default_provider: Provider used when a call does not name one.
            ollama_base_url: Ollama server root; the /v1 API is appended.
            openai_api_key: Platform key. OpenAI is only routable when set.
        """
        self._client = client
        self.default_provider = default_provider
        self._adapters: dict[str, LLMAdapter] = {
            "ollama": OpenAICompatibleAdapter(
                client, base_url=ollama_base_url.rstrip("/") + "/v1", provider="ollama"
            ),
        }
        self._api_keys: dict[str, str | None] = {"ollama": None}
        if openai_api_key:
            self._adapters["openai"] = OpenAICompatibleAdapter(
                client, base_url=OPENAI_BASE_URL, provider="openai"
            )
            self._api_keys["openai"] = openai_api_key

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "LLMRouter":
        return cls(
            client,
            default_provider=settings.llm_provider.value,
            ollama_base_url=settings.ollama_base_url,
            openai_api_key=settings.openai_api_key,
        )

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Get adapter for provider.

        Raises:
            LLMError: If provider is unknown or not configured.
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Provider {provider} is not configured",
                provider=provider,
            )
        return adapter

    def is_provider_available(self, provider: str) -> bool:
        return provider in self._adapters

    async def generate(
        self,
        req: LLMRequest,
        *,
        provider: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        operation: str = "other",
    ) -> LLMResponse:
        """Non-streaming LLM generation with error normalization.

        Raises:
            LLMError: With normalized error class on failure.
        """
        provider = provider or self.default_provider
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, streaming=False, operation=operation)

        logger.info("llm.request.started", **safe_kv(**base, message_chars=_message_chars(req)))
        start = time.monotonic()

        try:
            response = await adapter.generate(
                req, api_key=self._api_keys.get(provider), timeout_s=timeout_s
            )
        except Exception as e:
            raise self._normalize_error(provider, e, base, start) from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=_elapsed_ms(start),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                provider_request_id=response.provider_request_id,
            ),
        )
        return response

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        provider: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        operation: str = "other",
    ) -> AsyncIterator[LLMChunk]:
        """Streaming LLM generation with error normalization.

        Yields:
            LLMChunk objects until terminal chunk (done=True).

        Raises:
            LLMError: With normalized error class on failure.
        """
        provider = provider or self.default_provider
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, streaming=True, operation=operation)

        logger.info("llm.request.started", **safe_kv(**base, message_chars=_message_chars(req)))
        start = time.monotonic()

        stream = adapter.generate_stream(
            req, api_key=self._api_keys.get(provider), timeout_s=timeout_s
        )
        try:
            async for chunk in stream:
                if chunk.done:
                    usage = chunk.usage
                    logger.info(
                        "llm.request.finished",
                        **safe_kv(
                            **base,
                            outcome="success",
                            latency_ms=_elapsed_ms(start),
                            tokens_input=usage.prompt_tokens if usage else None,
                            tokens_output=usage.completion_tokens if usage else None,
                            tokens_total=usage.total_tokens if usage else None,
                            provider_request_id=chunk.provider_request_id,
                        ),
                    )
                yield chunk
        except Exception as e:
            raise self._normalize_error(provider, e, base, start) from e
        finally:
            # Closes the upstream response when the consumer stops early
            await stream.aclose()

    async def check_health(self, model_name: str, *, provider: str | None = None) -> dict:
        """Check provider reachability and whether model_name is served."""
        provider = provider or self.default_provider
        adapter = self.resolve_adapter(provider)
        try:
            models = await adapter.list_models(
                api_key=self._api_keys.get(provider), timeout_s=HEALTH_TIMEOUT_S
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("llm.health.unreachable", provider=provider, error_type=type(e).__name__)
            return {
                "provider": provider,
                "reachable": False,
                "model": model_name,
                "model_available": False,
            }

        return {
            "provider": provider,
            "reachable": True,
            "model": model_name,
            "model_available": model_name in models,
        }

    def _normalize_error(
        self, provider: str, exc: Exception, base: dict, start: float
    ) -> LLMError:
        """Map an adapter exception to LLMError and log llm.request.failed."""
        provider_request_id = None

        if isinstance(exc, LLMError):
            error = exc
        elif isinstance(exc, httpx.TimeoutException):
            error = LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider)
        elif isinstance(exc, httpx.HTTPStatusError):
            json_body = self._safe_parse_json(exc.response)
            error_class = classify_provider_error(
                provider, exc.response.status_code, json_body, None
            )
            provider_request_id = exc.response.headers.get("x-request-id")
            error = LLMError(
                error_class,
                f"Provider returned HTTP {exc.response.status_code}",
                provider=provider,
            )
        elif isinstance(exc, httpx.NetworkError):
            error = LLMError(LLMErrorClass.PROVIDER_DOWN, "Network error", provider=provider)
        else:
            error = LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(exc).__name__}",
                provider=provider,
            )

        logger.error(
            "llm.request.failed",
            **safe_kv(
                **base,
                outcome="error",
                error_class=error.error_class.value,
                latency_ms=_elapsed_ms(start),
                provider_request_id=provider_request_id,
            ),
        )
        return error

    def _safe_parse_json(self, response: httpx.Response) -> dict | None:
        """Safely parse JSON from response, returning None on failure."""
        try:
            return response.json()
        except Exception:
            return None


def _base_log_fields(provider: str, req: LLMRequest, *, streaming: bool, operation: str) -> dict:
    return {
        "provider": provider,
        "model_name": req.model_name,
        "streaming": streaming,
        "llm_operation": operation,
    }


def _message_chars(req: LLMRequest) -> int:
    return sum(len(m.content) for m in req.messages)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
