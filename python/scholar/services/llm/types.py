"""Shared type definitions for the LLM adapter layer.

- Turn: Provider-agnostic conversation turn
- LLMRequest: Request to LLM adapter
- LLMUsage: Token usage from provider response
- LLMResponse: Complete response from non-streaming call
- LLMChunk: Single chunk from streaming response

Streaming invariants:
- Chunks with done=False MUST have usage=None
- Exactly ONE terminal chunk with done=True
- Terminal chunk MAY have usage and provider_request_id (if provider returns them)
- If provider stream ends without terminal marker: raise E_LLM_PROVIDER_DOWN
"""

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn."""

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    @classmethod
    def from_payload(cls, data: dict | None) -> "LLMUsage | None":
        """Build from an OpenAI-style "usage" object, None if absent."""
        if not data:
            return None
        return cls(
            prompt_tokens=data.get("prompt_tokens"),
            completion_tokens=data.get("completion_tokens"),
            total_tokens=data.get("total_tokens"),
        )


@dataclass(frozen=True)
class LLMRequest:
    """Request to LLM adapter.

    Attributes:
        model_name: The model identifier (e.g., "qwen2.5:1.5b", "gpt-4o-mini")
        messages: List of Turn objects (system turn first if present)
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature (0.0 to 2.0), None uses provider default
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from non-streaming call."""

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


@dataclass(frozen=True)
class LLMChunk:
    """Single chunk from streaming response.

    - done=False: delta_text contains new text, usage MUST be None
    - done=True: terminal chunk. delta_text may be empty; usage and
      provider_request_id are populated when the provider returns them.
    """

    delta_text: str
    done: bool
    usage: LLMUsage | None = None
    provider_request_id: str | None = None

    def __post_init__(self):
        if not self.done and self.usage is not None:
            raise ValueError("Non-terminal chunks (done=False) must have usage=None")
