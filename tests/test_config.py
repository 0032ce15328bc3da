import pytest

from agentloop.config import Settings, load_settings, require_gemini_api_key, require_openrouter_api_key
from agentloop.errors import ConfigurationError


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    monkeypatch.setenv("RECOVERY_MAX_ATTEMPTS", "7")

    settings = Settings()

    assert settings.gemini_api_key == "env-key"
    assert settings.recovery_max_attempts == 7
    assert require_gemini_api_key(settings) == "env-key"


def test_missing_keys_raise_configuration_error():
    settings = Settings(GEMINI_API_KEY="", OPENROUTER_API_KEY="")

    with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
        require_gemini_api_key(settings)
    with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
        require_openrouter_api_key(settings)


def test_load_settings_is_cached(monkeypatch):
    monkeypatch.setenv("OPENROUTER_MODEL", "openai/gpt-4.1-nano")
    load_settings.cache_clear()
    try:
        settings = load_settings()

        assert settings.openrouter_model == "openai/gpt-4.1-nano"
        assert load_settings() is settings
    finally:
        load_settings.cache_clear()
