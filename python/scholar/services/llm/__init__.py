"""LLM adapter layer for provider-agnostic completion calls.

Includes:

- An adapter for OpenAI-compatible chat-completions servers (Ollama, OpenAI)
- Error classification and normalization
- A router that selects the adapter and emits redacted observability events

Usage:
    from scholar.services.llm import LLMRouter, LLMRequest, Turn

    router = LLMRouter.from_settings(httpx_client, settings)
    request = LLMRequest(
        model_name="qwen2.5:1.5b",
        messages=[Turn(role="user", content="Hello!")],
        max_tokens=100,
    )
    response = await router.generate(request)

Adapters never retry, never touch the database and never log bodies;
raw provider errors bubble up to the router for classification.
"""

from scholar.services.llm.adapter import LLMAdapter
from scholar.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from scholar.services.llm.openai_compat import OpenAICompatibleAdapter
from scholar.services.llm.router import LLMRouter
from scholar.services.llm.types import (
    LLMChunk,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    Turn,
)

__all__ = [
    # Core types
    "Turn",
    "LLMRequest",
    "LLMResponse",
    "LLMChunk",
    "LLMUsage",
    # Adapters
    "LLMAdapter",
    "OpenAICompatibleAdapter",
    # Router
    "LLMRouter",
    # Errors
    "LLMError",
    "LLMErrorClass",
    "classify_provider_error",
]
