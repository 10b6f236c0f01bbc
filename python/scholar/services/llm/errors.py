"""LLM error classification and normalization.

Classifies provider errors into normalized error classes. Called by the
router after catching adapter exceptions.

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403)
- E_LLM_RATE_LIMIT: Rate limit exceeded (429)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error)
- E_MODEL_NOT_AVAILABLE: Model not found or not pulled
"""

from enum import Enum

from scholar.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications."""

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify provider error into normalized error class.

    Args:
        provider: One of "ollama", "openai"
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The exception that was raised (if any)
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    if provider in ("openai", "ollama"):
        return _classify_openai_compatible_error(status_code, json_body)

    logger.warning("unknown_provider_for_error_classification", provider=provider)
    return LLMErrorClass.PROVIDER_DOWN


def _error_message(json_body: dict | None) -> tuple[str, str]:
    """Return (code, lowercased message) from an error body.

    OpenAI nests {"error": {"code", "message"}}; Ollama may send {"error": "..."}.
    """
    if not json_body:
        return "", ""
    error = json_body.get("error", {})
    if isinstance(error, str):
        return "", error.lower()
    if not isinstance(error, dict):
        return "", ""
    return str(error.get("code") or ""), str(error.get("message") or "").lower()


def _classify_openai_compatible_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """Classify errors from OpenAI-compatible chat-completions APIs.

    - 401 or 403 → INVALID_KEY
    - 429 → RATE_LIMIT
    - 404 → MODEL_NOT_AVAILABLE (Ollama answers 404 for a model that is not pulled)
    - 5xx → PROVIDER_DOWN
    - 400 + context_length_exceeded / "maximum context length" → CONTEXT_TOO_LARGE
    - 400 + "model ... not found" → MODEL_NOT_AVAILABLE
    """
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY

    if status_code == 429:
        return LLMErrorClass.RATE_LIMIT

    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400:
        error_code, error_message = _error_message(json_body)
        if error_code == "context_length_exceeded":
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "maximum context length" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "model" in error_message and "not found" in error_message:
            return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN
