"""Application configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentloop.errors import ConfigurationError


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_BASE_URL",
    )
    gemini_pro_model: str = Field(default="gemini-2.5-pro", alias="GEMINI_PRO_MODEL")
    gemini_flash_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_FLASH_MODEL")
    gemini_image_model: str = Field(default="gemini-2.5-flash-image", alias="GEMINI_IMAGE_MODEL")

    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    openrouter_model: str = Field(default="openai/gpt-4.1", alias="OPENROUTER_MODEL")
    openrouter_light_model: str = Field(default="openai/gpt-4.1-mini", alias="OPENROUTER_LIGHT_MODEL")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )

    request_timeout_seconds: float = Field(default=120.0, alias="REQUEST_TIMEOUT_SECONDS")
    # Tries against the primary model before switching to the fallback model.
    transient_retry_attempts: int = Field(default=3, alias="TRANSIENT_RETRY_ATTEMPTS")
    transient_retry_interval_seconds: float = Field(default=2.0, alias="TRANSIENT_RETRY_INTERVAL_SECONDS")
    recovery_max_attempts: int = Field(default=5, alias="RECOVERY_MAX_ATTEMPTS")
    history_database_path: Path = Field(default=Path("history.db"), alias="HISTORY_DATABASE_PATH")


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def require_gemini_api_key(settings: Settings) -> str:
    """Return the Gemini key, failing loudly when it was never configured."""
    if not settings.gemini_api_key:
        raise ConfigurationError("GEMINI_API_KEY is not set")
    return settings.gemini_api_key


def require_openrouter_api_key(settings: Settings) -> str:
    if not settings.openrouter_api_key:
        raise ConfigurationError("OPENROUTER_API_KEY is not set")
    return settings.openrouter_api_key
