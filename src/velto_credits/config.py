"""Library configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_PROVIDERS = ("openrouter", "groq")


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None
    APP_VERSION: str = "0.1.0"

    # LLM providers
    LLM_PROVIDER: str = "openrouter"
    OPENROUTER_API_KEY: str | None = None
    OPENROUTER_API_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    GROQ_API_KEY: str | None = None
    GROQ_API_URL: str = "https://api.groq.com/openai/v1/chat/completions"
    LLM_TIMEOUT_SECONDS: float = 60.0
    APP_REFERER: str = "http://localhost:5173"
    APP_TITLE: str = "Founder Launch Pilot"

    # Storage
    REDIS_URL: str = "redis://localhost:6379"
    FIRESTORE_PROJECT: str | None = None
    FIRESTORE_DATABASE: str = "(default)"
    USERS_COLLECTION: str = "users"

    # Credits
    CREDITS_CACHE_PREFIX: str = "ai_credits_v1"
    ANONYMOUS_IDENTITY: str = "anonymous"
    NOTIFY_DEBOUNCE_SECONDS: float = 0.1
    OUTBOX_FLUSH_INTERVAL_SECONDS: float = 30.0
    OUTBOX_MAX_PENDING: int = 500
    OUTBOX_MAX_ATTEMPTS: int = 5

    # Empty string disables tiktoken and uses the length-based estimate
    TOKENIZER_ENCODING: str = "cl100k_base"

    @field_validator("LLM_PROVIDER")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Only the OpenAI-compatible providers we ship adapters for are allowed."""
        v = v.strip().lower()
        if v not in SUPPORTED_PROVIDERS:
            raise ValueError(f"LLM_PROVIDER must be one of {', '.join(SUPPORTED_PROVIDERS)}")
        return v

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
