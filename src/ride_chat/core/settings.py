"""Library settings and configuration.

This module defines the configuration options for the ride chat client.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Chat client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Components also accept an explicit instance so tests never read the
    environment.
    """

    # Store (managed backend) connection
    store_base_url: str | None = Field(default=None, alias="RIDE_CHAT_STORE_URL")
    store_api_key: str | None = Field(default=None, alias="RIDE_CHAT_STORE_API_KEY")
    store_http_timeout_seconds: float = Field(
        default=10.0,
        alias="RIDE_CHAT_STORE_HTTP_TIMEOUT_SECONDS",
    )
    messages_table: str = Field(default="messages", alias="RIDE_CHAT_MESSAGES_TABLE")
    mark_read_rpc: str = Field(default="mark_messages_read", alias="RIDE_CHAT_MARK_READ_RPC")

    # Voice clips live in a private storage bucket
    voice_bucket: str = Field(default="chat-audio", alias="RIDE_CHAT_VOICE_BUCKET")
    voice_url_ttl_seconds: int = Field(default=600, alias="RIDE_CHAT_VOICE_URL_TTL_SECONDS")

    # Live subscription (long-poll) and reconnect backoff
    subscription_poll_timeout_seconds: float = Field(
        default=25.0,
        alias="RIDE_CHAT_SUBSCRIPTION_POLL_TIMEOUT_SECONDS",
    )
    subscription_backoff_initial_seconds: float = Field(
        default=0.5,
        alias="RIDE_CHAT_SUBSCRIPTION_BACKOFF_INITIAL_SECONDS",
    )
    subscription_backoff_max_seconds: float = Field(
        default=30.0,
        alias="RIDE_CHAT_SUBSCRIPTION_BACKOFF_MAX_SECONDS",
    )

    # Reconciliation and presentation timing
    echo_match_window_seconds: float = Field(
        default=15.0,
        alias="RIDE_CHAT_ECHO_MATCH_WINDOW_SECONDS",
    )
    delivered_delay_seconds: float = Field(
        default=0.8,
        alias="RIDE_CHAT_DELIVERED_DELAY_SECONDS",
    )
    typing_timeout_seconds: float = Field(
        default=1.5,
        alias="RIDE_CHAT_TYPING_TIMEOUT_SECONDS",
    )
    keep_failed_sends: bool = Field(default=True, alias="RIDE_CHAT_KEEP_FAILED_SENDS")

    # Circuit breaker guarding the HTTP client
    circuit_failure_threshold: int = Field(
        default=5,
        alias="RIDE_CHAT_CIRCUIT_FAILURE_THRESHOLD",
    )
    circuit_recovery_timeout_seconds: float = Field(
        default=30.0,
        alias="RIDE_CHAT_CIRCUIT_RECOVERY_TIMEOUT_SECONDS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def store_enabled(self) -> bool:
        """Return True when a store base URL is configured."""
        return bool(self.store_base_url)


settings = Settings()
