"""OpenAI-compatible chat-completions adapter.

Serves both Ollama (which exposes the same API under <OLLAMA_BASE_URL>/v1)
and OpenAI itself; only the base URL and the Authorization header differ.

- Endpoint: POST <base_url>/chat/completions
- Streaming: Server-Sent Events with data: {...} format, terminated by data: [DONE]
- Usage: requested via stream_options.include_usage. It arrives in a trailing
  chunk with an empty choices list and is carried onto the terminal LLMChunk.
- Models: GET <base_url>/models

Response (non-stream) - extract:
{
  "id": "chatcmpl-...",
  "choices": [{"message": {"content": "<output_text>"}}],
  "usage": {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}
}
"""

import json
from collections.abc import AsyncIterator

import httpx

from scholar.services.llm.adapter import LLMAdapter
from scholar.services.llm.errors import LLMError, LLMErrorClass
from scholar.services.llm.types import LLMChunk, LLMRequest, LLMResponse, LLMUsage, Turn

CONNECT_TIMEOUT_S = 10.0


class OpenAICompatibleAdapter(LLMAdapter):
    """Adapter for any server speaking the OpenAI chat-completions protocol."""

    def __init__(self, client: httpx.AsyncClient, *, base_url: str, provider: str):
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.provider = provider

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: float,
    ) -> LLMResponse:
        """Non-streaming chat completion."""
        response = await self._client.post(
            self.chat_url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=CONNECT_TIMEOUT_S),
        )
        response.raise_for_status()

        return self._parse_response(response.json(), response.headers)

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: float,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming chat completion using Server-Sent Events."""
        async with self._client.stream(
            "POST",
            self.chat_url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=CONNECT_TIMEOUT_S),
        ) as response:
            if response.is_error:
                # Body must be read before raise_for_status so the router can classify it
                await response.aread()
            response.raise_for_status()

            provider_request_id = response.headers.get("x-request-id")
            usage: LLMUsage | None = None

            async for line in response.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue

                data_str = line[5:].strip()

                if data_str == "[DONE]":
                    yield LLMChunk(
                        delta_text="",
                        done=True,
                        usage=usage,
                        provider_request_id=provider_request_id,
                    )
                    return

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                if provider_request_id is None:
                    provider_request_id = data.get("id")

                chunk_usage = LLMUsage.from_payload(data.get("usage"))
                if chunk_usage is not None:
                    usage = chunk_usage

                choices = data.get("choices") or []
                if not choices:
                    continue

                delta_text = (choices[0].get("delta") or {}).get("content") or ""
                if delta_text:
                    yield LLMChunk(delta_text=delta_text, done=False)

        raise LLMError(
            LLMErrorClass.PROVIDER_DOWN,
            "Stream ended without [DONE] marker",
            provider=self.provider,
        )

    async def list_models(self, *, api_key: str | None, timeout_s: float) -> list[str]:
        """List model identifiers via GET /models."""
        response = await self._client.get(
            f"{self.base_url}/models",
            headers=self._build_headers(api_key),
            timeout=httpx.Timeout(timeout_s, connect=CONNECT_TIMEOUT_S),
        )
        response.raise_for_status()
        return [item["id"] for item in response.json().get("data", []) if "id" in item]

    def _build_headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # Ollama ignores the key, but OpenAI-compatible proxies in front of it may not
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict:
        body: dict = {
            "model": req.model_name,
            "messages": [self._turn_to_message(turn) for turn in req.messages],
            "max_tokens": req.max_tokens,
            "stream": stream,
        }

        if stream:
            body["stream_options"] = {"include_usage": True}

        if req.temperature is not None:
            body["temperature"] = req.temperature

        return body

    def _turn_to_message(self, turn: Turn) -> dict[str, str]:
        return {
            "role": turn.role,
            "content": turn.content,
        }

    def _parse_response(self, data: dict, headers: httpx.Headers) -> LLMResponse:
        """Parse non-streaming response."""
        choices = data.get("choices", [])
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Response missing choices",
                provider=self.provider,
            )

        text = (choices[0].get("message") or {}).get("content") or ""

        return LLMResponse(
            text=text,
            usage=LLMUsage.from_payload(data.get("usage")),
            provider_request_id=headers.get("x-request-id") or data.get("id"),
        )
