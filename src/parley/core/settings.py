"""Application settings and configuration.

This module defines all configuration options for the Parley messaging client.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Parley", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")

    # Backing store selection: "sql" (bundled SQLAlchemy store) or "rest"
    store_backend: str = Field(default="sql", alias="PARLEY_STORE_BACKEND")

    # SQL backing store
    database_url: str = Field(default="sqlite:///./parley.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Hosted (REST + realtime) backing store
    rest_base_url: str | None = Field(default=None, alias="PARLEY_REST_URL")
    rest_api_key: str | None = Field(default=None, alias="PARLEY_REST_API_KEY")
    realtime_url: str | None = Field(default=None, alias="PARLEY_REALTIME_URL")
    http_timeout_seconds: float = Field(default=10.0, alias="PARLEY_HTTP_TIMEOUT_SECONDS")
    messages_table: str = Field(default="messages", alias="PARLEY_MESSAGES_TABLE")
    reactions_table: str = Field(default="message_reactions", alias="PARLEY_REACTIONS_TABLE")
    profiles_table: str = Field(default="profiles", alias="PARLEY_PROFILES_TABLE")

    # Bearer credential handling
    jwt_secret: str | None = Field(default=None, alias="PARLEY_JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="PARLEY_JWT_ALGORITHM")
    jwt_audience: str | None = Field(default="authenticated", alias="PARLEY_JWT_AUDIENCE")

    # Send quota (checked server-side before every send)
    rate_limit_action: str = Field(default="messaging", alias="PARLEY_RATE_LIMIT_ACTION")
    rate_limit_max_attempts: int = Field(default=50, alias="PARLEY_RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_minutes: int = Field(default=60, alias="PARLEY_RATE_LIMIT_WINDOW_MINUTES")

    # Change channel reconnection backoff
    reconnect_initial_delay_seconds: float = Field(
        default=0.5,
        alias="PARLEY_RECONNECT_INITIAL_DELAY_SECONDS",
    )
    reconnect_max_delay_seconds: float = Field(
        default=30.0,
        alias="PARLEY_RECONNECT_MAX_DELAY_SECONDS",
    )
    reconnect_multiplier: float = Field(default=2.0, alias="PARLEY_RECONNECT_MULTIPLIER")
    reconnect_jitter: float = Field(default=0.1, alias="PARLEY_RECONNECT_JITTER")
    reconnect_max_attempts: int = Field(default=8, alias="PARLEY_RECONNECT_MAX_ATTEMPTS")
    realtime_heartbeat_seconds: float = Field(
        default=25.0,
        alias="PARLEY_REALTIME_HEARTBEAT_SECONDS",
    )

    # Read-state confirmation round trips
    read_confirm_attempts: int = Field(default=3, alias="PARLEY_READ_CONFIRM_ATTEMPTS")
    read_confirm_delay_seconds: float = Field(
        default=0.25,
        alias="PARLEY_READ_CONFIRM_DELAY_SECONDS",
    )

    # Conversation directory
    user_search_limit: int = Field(default=20, alias="PARLEY_USER_SEARCH_LIMIT")
    placeholder_prefix: str = Field(default="temp-", alias="PARLEY_PLACEHOLDER_PREFIX")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def realtime_enabled(self) -> bool:
        """Return True when a hosted realtime endpoint is configured."""
        return bool(self.realtime_url)


settings = Settings()
