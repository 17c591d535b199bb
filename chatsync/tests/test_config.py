"""
Unit Tests for Configuration
============================

Tests for chatsync/config.py

Test Coverage:
--------------
1. Defaults match the shipped timing constants
2. CHATSYNC_* environment variables override defaults
3. Per-field validation (relay URL scheme, log level, bounds)
4. validate_configuration cross-field errors and warnings
5. get_settings caching

Run tests:
----------
    pytest chatsync/tests/test_config.py -v
"""

import os

import pytest
from pydantic import ValidationError

from chatsync.config import Settings, get_settings, validate_configuration


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove CHATSYNC_* variables leaking in from the host environment"""
    for key in list(os.environ):
        if key.startswith("CHATSYNC_"):
            monkeypatch.delenv(key)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Loading
# ============================================================================

def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.api_base_url_str == "http://localhost:3001/api"
    assert settings.RELAY_WS_URL == "ws://localhost:3001/ws"
    assert settings.RECONNECT_BASE_DELAY_SECONDS == 1.0
    assert settings.MAX_RECONNECT_ATTEMPTS == 5
    assert settings.HEARTBEAT_INTERVAL_SECONDS == 30.0
    assert settings.TYPING_THROTTLE_SECONDS == 3.0
    assert settings.TYPING_DISPLAY_TIMEOUT_SECONDS == 5.0
    assert settings.CACHE_TTL_SECONDS == 30.0
    assert settings.OPTIMISTIC_TIMEOUT_SECONDS == 5.0
    assert settings.MAX_SEND_RETRIES == 3
    assert settings.MAX_FILES_PER_MESSAGE == 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CHATSYNC_MAX_SEND_RETRIES", "7")
    monkeypatch.setenv("CHATSYNC_RELAY_WS_URL", "wss://relay.example.com/ws")
    monkeypatch.setenv("CHATSYNC_LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.MAX_SEND_RETRIES == 7
    assert settings.RELAY_WS_URL == "wss://relay.example.com/ws"
    assert settings.LOG_LEVEL == "DEBUG"


def test_unprefixed_variables_are_ignored(monkeypatch):
    monkeypatch.setenv("MAX_SEND_RETRIES", "9")

    assert Settings(_env_file=None).MAX_SEND_RETRIES == 3


@pytest.mark.parametrize("field,value", [
    ("RELAY_WS_URL", "http://relay.example.com/ws"),
    ("LOG_LEVEL", "LOUD"),
    ("MAX_FILES_PER_MESSAGE", 0),
    ("OPTIMISTIC_TIMEOUT_SECONDS", -1),
    ("API_BASE_URL", "not a url"),
])
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("CHATSYNC_MAX_SEND_RETRIES", "8")

    assert get_settings() is first

    get_settings.cache_clear()
    assert get_settings().MAX_SEND_RETRIES == 8


# ============================================================================
# Cross-field Validation
# ============================================================================

def test_default_configuration_is_valid():
    status = validate_configuration(Settings(_env_file=None))

    assert status["valid"] is True
    assert status["errors"] == []
    assert status["warnings"] == []
    assert status["max_send_retries"] == 3
    assert status["max_reconnect_attempts"] == 5


def test_throttle_not_shorter_than_display_timeout_is_an_error():
    settings = Settings(
        _env_file=None,
        TYPING_THROTTLE_SECONDS=5.0,
        TYPING_DISPLAY_TIMEOUT_SECONDS=5.0,
    )

    status = validate_configuration(settings)

    assert status["valid"] is False
    assert "TYPING_THROTTLE_SECONDS" in status["errors"][0]


def test_timing_and_transport_warnings():
    settings = Settings(
        _env_file=None,
        OPTIMISTIC_TIMEOUT_SECONDS=20.0,
        REQUEST_TIMEOUT_SECONDS=10.0,
        RELAY_WS_URL="ws://relay.example.com/ws",
    )

    status = validate_configuration(settings)

    assert status["valid"] is True
    assert len(status["warnings"]) == 2
    assert any("unencrypted" in w for w in status["warnings"])
