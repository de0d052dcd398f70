"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # LLM provider (OpenRouter by default; any OpenAI-compatible base URL
    # such as Ollama, LM Studio or vLLM works through LLM_BASE_URL)
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str | None = "https://openrouter.ai/api/v1"
    CHAT_MODEL: str = "openrouter/google/gemma-3-27b-it:free"
    FALLBACK_CHAT_MODEL: str = "openrouter/openai/gpt-4o-mini"
    LLM_TIMEOUT: float = 10.0
    LLM_MAX_RETRIES: int = 1
    LLM_MAX_TOKENS: int = 2000


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
