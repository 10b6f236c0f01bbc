"""Short conversation titles for newly created conversations.

The fallback (a prefix of the user's first message) is computed before the
model is asked, so any failure of the title completion still yields a
usable title. Title generation never fails the chat turn.
"""

import asyncio

from scholar.logging import get_logger
from scholar.services.llm import LLMRequest, LLMRouter, Turn

logger = get_logger(__name__)

TITLE_FALLBACK_CHARS = 50
TITLE_MAX_CHARS = 100
TITLE_TEMPERATURE = 0.3
EMPTY_TITLE = "New conversation"

TITLE_SYSTEM_PROMPT = (
    "Generate a very short, concise title (max 6 words) for this conversation. "
    "Only return the title, nothing else."
)


def fallback_title(user_text: str) -> str:
    """First TITLE_FALLBACK_CHARS characters of the message, or a placeholder."""
    text = user_text.strip()
    if not text:
        return EMPTY_TITLE
    return text[:TITLE_FALLBACK_CHARS]


def clean_title(raw: str) -> str:
    """Strip whitespace and the quotes small models like to wrap titles in."""
    title = raw.strip()
    while len(title) >= 2 and title[0] == title[-1] and title[0] in "\"'`":
        title = title[1:-1].strip()
    return title


class TitleGenerator:
    def __init__(
        self,
        router: LLMRouter,
        *,
        model: str,
        timeout_s: float,
        max_tokens: int = 32,
    ):
        self._router = router
        self._model = model
        self._timeout_s = timeout_s
        self._max_tokens = max_tokens

    async def generate(self, user_text: str) -> str:
        """Ask the model for a title; return the fallback on any problem."""
        fallback = fallback_title(user_text)
        if not user_text.strip():
            return fallback

        request = LLMRequest(
            model_name=self._model,
            messages=[
                Turn(role="system", content=TITLE_SYSTEM_PROMPT),
                Turn(role="user", content=user_text),
            ],
            max_tokens=self._max_tokens,
            temperature=TITLE_TEMPERATURE,
        )

        try:
            response = await asyncio.wait_for(
                self._router.generate(request, timeout_s=self._timeout_s, operation="title"),
                timeout=self._timeout_s,
            )
            title = clean_title(response.text)
        except Exception as e:
            logger.warning("title_generation_failed", error_type=type(e).__name__)
            return fallback

        if not title or len(title) >= TITLE_MAX_CHARS:
            logger.info("title_generation_discarded", title_chars=len(title))
            return fallback

        return title
