"""Application settings loaded from environment variables.

Environment Configuration:
    SCHOLAR_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: PostgreSQL connection string (required)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Auth Configuration (required in all environments):
    AUTH_JWKS_URL: Full URL to the identity provider JWKS endpoint
    AUTH_ISSUER: Expected JWT issuer (trailing slash stripped)
    AUTH_AUDIENCES: Comma-separated list of allowed audiences

LLM Configuration:
    LLM_PROVIDER: Completion provider (ollama | openai)
    OLLAMA_BASE_URL: Base URL of the Ollama server (OpenAI-compatible /v1 is appended)
    OPENAI_API_KEY: Platform key, required when LLM_PROVIDER=openai
    DEFAULT_MODEL: Model used when a request does not name one
    DEFAULT_TEMPERATURE: Sampling temperature used when a request does not set one
    LLM_TIMEOUT_S: Upper bound for one streamed completion
    TITLE_TIMEOUT_S: Upper bound for the title completion
    STREAM_BUFFER_SIZE: Max undelivered chunks held between provider and client
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class LLMProvider(str, Enum):
    """Supported completion providers."""

    OLLAMA = "ollama"
    OPENAI = "openai"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - AUTH_JWKS_URL, AUTH_ISSUER, AUTH_AUDIENCES are required in all environments
    - OPENAI_API_KEY is required when LLM_PROVIDER=openai
    """

    scholar_env: Environment = Field(default=Environment.LOCAL, alias="SCHOLAR_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Auth settings (required in all environments)
    auth_jwks_url: str | None = Field(default=None, alias="AUTH_JWKS_URL")
    auth_issuer: str | None = Field(default=None, alias="AUTH_ISSUER")
    auth_audiences: str | None = Field(default=None, alias="AUTH_AUDIENCES")

    # LLM provider
    llm_provider: LLMProvider = Field(default=LLMProvider.OLLAMA, alias="LLM_PROVIDER")
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    default_model: str = Field(default="qwen2.5:1.5b", alias="DEFAULT_MODEL")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0, alias="DEFAULT_TEMPERATURE")
    llm_max_tokens: int = Field(default=2048, gt=0, alias="LLM_MAX_TOKENS")
    llm_timeout_s: float = Field(default=300.0, gt=0, alias="LLM_TIMEOUT_S")

    # Title generation
    title_timeout_s: float = Field(default=10.0, gt=0, alias="TITLE_TIMEOUT_S")
    title_max_tokens: int = Field(default=32, gt=0, alias="TITLE_MAX_TOKENS")

    # Streaming
    stream_buffer_size: int = Field(default=64, gt=0, alias="STREAM_BUFFER_SIZE")

    # Reconciliation job
    reconcile_interval_s: int = Field(default=300, gt=0, alias="RECONCILE_INTERVAL_S")
    reconcile_grace_minutes: int = Field(default=10, ge=0, alias="RECONCILE_GRACE_MINUTES")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure required settings are set for all environments."""
        missing_auth = []
        if not self.auth_jwks_url:
            missing_auth.append("AUTH_JWKS_URL")
        if not self.auth_issuer:
            missing_auth.append("AUTH_ISSUER")
        if not self.auth_audiences:
            missing_auth.append("AUTH_AUDIENCES")

        if missing_auth:
            raise ValueError(
                f"Missing required auth settings: {', '.join(missing_auth)}. "
                "Set these environment variables or add them to .env."
            )

        if self.llm_provider == LLMProvider.OPENAI and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for LLM_PROVIDER=openai")

        return self

    @property
    def audience_list(self) -> list[str]:
        """Parse comma-separated audiences into a list."""
        if self.auth_audiences:
            return [a.strip() for a in self.auth_audiences.split(",") if a.strip()]
        return []

    @property
    def normalized_issuer(self) -> str | None:
        """Return issuer with trailing slash stripped."""
        if self.auth_issuer:
            return self.auth_issuer.rstrip("/")
        return None

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
