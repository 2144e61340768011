import os
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "pricehub Pricing Pipeline"
    DEBUG: bool = False
    RUN_BACKGROUND_JOBS: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    # Time a running loop iteration gets to finish on shutdown
    SHUTDOWN_GRACE_SECONDS: float = Field(default=30.0, gt=0)

    # Database
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "pricehub"

    @property
    def database_url(self) -> str:
        """Async database URL."""
        # DATABASE_URL wins over the individual components
        env_db_url = os.getenv("DATABASE_URL")
        if env_db_url:
            return env_db_url
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Rule scheduler
    RULES_SCHEDULER_INTERVAL_SECONDS: int = Field(default=60, ge=1)

    # Apply worker
    RULES_WORKER_INTERVAL_SECONDS: int = Field(default=10, ge=1)
    RULES_WORKER_BATCH_SIZE: int = Field(default=10, ge=1)
    APPLY_TARGET_DELAY_MS: int = Field(default=100, ge=0)
    CONNECTOR_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)
    RUN_ERROR_SUMMARY_LIMIT: int = Field(default=10, ge=1)
    RUN_STALE_AFTER_SECONDS: int = Field(default=1800, ge=1)
    # False keeps the two-terminal-state model (partial success reported as APPLIED)
    RUNS_PARTIAL_STATUS: bool = True

    # Outbox dispatcher
    OUTBOX_POLL_INTERVAL_SECONDS: int = Field(default=5, ge=1)
    OUTBOX_BATCH_SIZE: int = Field(default=100, ge=1)
    OUTBOX_MAX_RETRIES: int = Field(default=5, ge=1)
    OUTBOX_INITIAL_DELAY_MS: int = Field(default=1000, ge=0)
    OUTBOX_MAX_DELAY_MS: int = Field(default=60000, ge=0)
    OUTBOX_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1)
    OUTBOX_HANDLER_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)
    OUTBOX_PROCESSING_TIMEOUT_SECONDS: int = Field(default=300, ge=1)
    OUTBOX_WEBHOOK_URL: str | None = Field(default=None)

    # Outbox health thresholds
    OUTBOX_HEALTH_WINDOW_SECONDS: int = Field(default=3600, ge=1)
    OUTBOX_HEALTH_MAX_FAILED: int = Field(default=10, ge=1)
    OUTBOX_HEALTH_MAX_DLQ: int = Field(default=100, ge=1)
    OUTBOX_HEALTH_MAX_BACKLOG_SECONDS: int = Field(default=900, ge=1)

    # Shopify connector
    SHOPIFY_SHOP_DOMAIN: str | None = Field(default=None)
    SHOPIFY_ACCESS_TOKEN: str | None = Field(default=None)
    SHOPIFY_API_VERSION: str = "2024-07"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
