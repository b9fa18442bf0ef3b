# src/bavard/core/settings.py
"""Application settings and configuration.

This module defines all configuration options for the BAVARD messaging service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="BAVARD", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication (tokens are minted by the external auth provider)
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Database configuration
    database_url: str = Field(default="sqlite:///./bavard.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Conversation store
    purge_batch_size: int = Field(default=500, alias="PURGE_BATCH_SIZE")
    conversation_page_size: int = Field(default=100, alias="CONVERSATION_PAGE_SIZE")

    # Ephemeral content
    story_ttl_seconds: int = Field(default=24 * 60 * 60, alias="STORY_TTL_SECONDS")
    story_display_ms: int = Field(default=5000, alias="STORY_DISPLAY_MS")
    story_reaper_enabled: bool = Field(default=True, alias="STORY_REAPER_ENABLED")
    story_reaper_interval_seconds: float = Field(
        default=300.0,
        alias="STORY_REAPER_INTERVAL_SECONDS",
    )
    story_reaper_batch_size: int = Field(default=200, alias="STORY_REAPER_BATCH_SIZE")

    # Live subscriptions
    subscription_backoff_initial_seconds: float = Field(
        default=0.5,
        alias="SUBSCRIPTION_BACKOFF_INITIAL_SECONDS",
    )
    subscription_backoff_max_seconds: float = Field(
        default=30.0,
        alias="SUBSCRIPTION_BACKOFF_MAX_SECONDS",
    )

    # AI generation endpoints
    ai_base_url: str | None = Field(default=None, alias="AI_BASE_URL")
    ai_api_key: str | None = Field(default=None, alias="AI_API_KEY")
    ai_timeout_seconds: float = Field(default=30.0, alias="AI_TIMEOUT_SECONDS")
    ai_failure_threshold: int = Field(default=5, alias="AI_FAILURE_THRESHOLD")
    ai_recovery_timeout_seconds: float = Field(
        default=60.0,
        alias="AI_RECOVERY_TIMEOUT_SECONDS",
    )
    assistant_history_limit: int = Field(default=10, alias="ASSISTANT_HISTORY_LIMIT")

    # Object storage gateway
    storage_backend: str = Field(default="memory", alias="STORAGE_BACKEND")
    pinata_jwt: str | None = Field(default=None, alias="PINATA_JWT")
    pinata_api_url: str = Field(
        default="https://api.pinata.cloud",
        alias="PINATA_API_URL",
    )
    pinata_gateway_url: str = Field(
        default="https://gateway.pinata.cloud/ipfs",
        alias="PINATA_GATEWAY_URL",
    )
    storage_timeout_seconds: float = Field(default=60.0, alias="STORAGE_TIMEOUT_SECONDS")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def ai_enabled(self) -> bool:
        """Return True when an AI generation endpoint is configured."""
        return bool(self.ai_base_url)


settings = Settings()  # type: ignore[call-arg]
