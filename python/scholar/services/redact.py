"""Log guard for LLM observability events.

safe_kv blocks forbidden keys at the call site.

Never-log policy:
- API keys and bearer tokens
- System prompts and note snapshots
- Message content and generated titles

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Token counts, provider request ID
"""

import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "system_prompt",
        "content",
        "api_key",
        "bearer",
        "token",
        "secret",
        "password",
        "message_text",
        "title",
        "context_text",
        "raw_body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In staging/prod, logs a warning instead.

    Usage:
        logger.info("llm.request.started", **safe_kv(
            provider="ollama",
            message_chars=1234,       # OK: _chars suffix
            prompt_sha256="abc123",   # OK: _sha256 suffix
            # prompt="hello world",   # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for SCHOLAR_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("SCHOLAR_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger("scholar.services.redact").warning(
            "safe_kv_violation", forbidden_keys=violations
        )

    return kwargs
