"""
Configuration module for the chat synchronization client.

This module uses Pydantic Settings to load and validate environment variables
for the REST backend, the realtime relay, reconnection and heartbeat timing,
typing indicators, caching and optimistic send behaviour.

Environment variables are loaded from .env file or system environment and
carry the ``CHATSYNC_`` prefix (e.g. ``CHATSYNC_MAX_SEND_RETRIES=5``).
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOCAL_HOSTS = ("localhost", "127.0.0.1", "[::1]")


class Settings(BaseSettings):
    """
    Client settings loaded from environment variables.

    Every timing constant used by the transport, the typing tracker and the
    message synchronizer is defined here, with the defaults the client
    ships with.
    """

    # =========================================================================
    # Remote Endpoints
    # =========================================================================

    API_BASE_URL: HttpUrl = Field(
        default="http://localhost:3001/api",
        description="REST API base URL (e.g., https://chat.example.com/api)",
    )

    RELAY_WS_URL: str = Field(
        default="ws://localhost:3001/ws",
        description="Realtime relay websocket URL (ws:// or wss://)",
    )

    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for read and mutation calls to the REST API",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Transport Session
    # =========================================================================

    RECONNECT_BASE_DELAY_SECONDS: float = Field(
        default=1.0,
        description="Base reconnect delay; attempt n waits base * 2^n",
        gt=0,
        le=60,
    )

    MAX_RECONNECT_ATTEMPTS: int = Field(
        default=5,
        description="Reconnect attempts before giving up permanently",
        ge=0,
        le=50,
    )

    HEARTBEAT_INTERVAL_SECONDS: float = Field(
        default=30.0,
        description="Interval between keep-alive pings while connected",
        gt=0,
        le=600,
    )

    # =========================================================================
    # Typing Indicators
    # =========================================================================

    TYPING_THROTTLE_SECONDS: float = Field(
        default=3.0,
        description="Minimum interval between outbound typing announces",
        gt=0,
    )

    TYPING_DISPLAY_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Remote typing indicator clears after this long without a stop event",
        gt=0,
    )

    # =========================================================================
    # Message Synchronization
    # =========================================================================

    CACHE_TTL_SECONDS: float = Field(
        default=30.0,
        description="Lifetime of cached message pages and conversation lists",
        ge=0,
        le=3600,
    )

    OPTIMISTIC_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Deadline for the remote create behind an optimistic send",
        gt=0,
        le=120,
    )

    MAX_SEND_RETRIES: int = Field(
        default=3,
        description="Manual retries allowed for a failed message",
        ge=0,
        le=20,
    )

    RETRY_BASE_DELAY_SECONDS: float = Field(
        default=1.0,
        description="Base retry backoff; attempt n becomes eligible after base * 2^n",
        ge=0,
        le=300,
    )

    MAX_FILES_PER_MESSAGE: int = Field(
        default=5,
        description="Maximum attachments per message",
        ge=1,
        le=50,
    )

    PENDING_CLEANUP_DELAY_SECONDS: float = Field(
        default=5.0,
        description="Grace period before a reconciled message leaves the pending overlay",
        ge=0,
        le=300,
    )

    DELETE_CLEANUP_DELAY_SECONDS: float = Field(
        default=1.0,
        description="Delay before a deleted message leaves the pending overlay",
        ge=0,
        le=300,
    )

    DEFAULT_PAGE_LIMIT: int = Field(
        default=50,
        description="Page size used when a query does not specify one",
        ge=1,
        le=500,
    )

    # =========================================================================
    # Development Relay Server
    # =========================================================================

    RELAY_HOST: str = Field(
        default="127.0.0.1",
        description="Host to bind the development relay",
    )

    RELAY_PORT: int = Field(
        default=3001,
        description="Port to bind the development relay",
        ge=1,
        le=65535,
    )

    # =========================================================================
    # Logging
    # =========================================================================

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_prefix="CHATSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def api_base_url_str(self) -> str:
        """
        Get the API base URL as string (for HTTP client usage).

        Returns:
            API URL as string without trailing slash.
        """
        return str(self.API_BASE_URL).rstrip("/")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("RELAY_WS_URL")
    @classmethod
    def validate_relay_url(cls, v: str) -> str:
        """
        Validate that the relay URL uses a websocket scheme.

        Raises:
            ValueError: If the scheme is not ws or wss
        """
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(
                f"RELAY_WS_URL must start with ws:// or wss://, got: {v}"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        level = v.upper()
        if level not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If an environment variable is invalid.

    Example:
        >>> from chatsync.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.MAX_SEND_RETRIES)
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Optional[Settings] = None) -> dict:
    """
    Validate cross-field settings and return a status report.

    Call during client startup to catch timing combinations that pass
    per-field validation but misbehave together.

    Args:
        settings: Settings to check (defaults to get_settings())

    Returns:
        Dictionary with validation status, errors and warnings.

    Example:
        >>> status = validate_configuration()
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    settings = settings or get_settings()
    errors = []
    warnings = []

    # Remote indicators would flicker off between two announces
    if settings.TYPING_THROTTLE_SECONDS >= settings.TYPING_DISPLAY_TIMEOUT_SECONDS:
        errors.append(
            "TYPING_THROTTLE_SECONDS must be shorter than TYPING_DISPLAY_TIMEOUT_SECONDS"
        )

    if settings.OPTIMISTIC_TIMEOUT_SECONDS > settings.REQUEST_TIMEOUT_SECONDS:
        warnings.append(
            "OPTIMISTIC_TIMEOUT_SECONDS exceeds REQUEST_TIMEOUT_SECONDS "
            "(sends will wait longer than reads)"
        )

    relay_url = settings.RELAY_WS_URL
    if relay_url.startswith("ws://") and not any(h in relay_url for h in LOCAL_HOSTS):
        warnings.append("RELAY_WS_URL is unencrypted (ws://) on a non-local host")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "max_send_retries": settings.MAX_SEND_RETRIES,
        "max_reconnect_attempts": settings.MAX_RECONNECT_ATTEMPTS,
    }
