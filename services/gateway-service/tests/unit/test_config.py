"""Unit tests for configuration."""

import pytest
from pydantic import ValidationError

from gateway_service.config import Settings


def test_settings_defaults():
    """Test default settings."""
    settings = Settings(_env_file=None)

    assert settings.port == 8010
    assert settings.log_level == "INFO"
    assert settings.catalog_path == "config/catalogs"
    assert settings.idle_timeout_seconds == 300.0
    assert settings.start_attempts == 3
    assert settings.allowed_caller_list is None
    assert settings.allowed_origin_list == []


def test_settings_from_env(monkeypatch):
    """Test settings from environment variables."""
    monkeypatch.setenv("IDLE_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ALLOWED_CALLERS", "orchestrator, cron ,")
    monkeypatch.setenv("PREWARM", "false")

    settings = Settings(_env_file=None)

    assert settings.idle_timeout_seconds == 30.0
    assert settings.log_level == "DEBUG"
    assert settings.allowed_caller_list == ["orchestrator", "cron"]
    assert settings.prewarm is False


def test_settings_reject_nonsense(monkeypatch):
    monkeypatch.setenv("START_ATTEMPTS", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
