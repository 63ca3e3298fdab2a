"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Bulk action engine settings loaded from environment variables."""

    # Service Settings
    APP_NAME: str = "Bulk Action Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./bulk_actions.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Queue Settings
    REDIS_URL: str = "redis://localhost:6379/0"
    BULK_QUEUE_NAME: str = "bulk_actions"
    BATCH_MAX_RETRIES: int = 3
    BATCH_RETRY_BACKOFF_SECONDS: int = 30
    BATCH_SOFT_TIME_LIMIT: int = 3300  # Batch releases itself for retry after this
    BATCH_TIME_LIMIT: int = 3600

    # Batching
    DEFAULT_BATCH_SIZE: int = 500
    MIN_BATCH_SIZE: int = 1
    MAX_BATCH_SIZE: int = 10000

    # Undo
    UNDO_ENABLED: bool = True
    UNDO_DEFAULT_EXPIRY_DAYS: int = 7
    UNDO_MAX_EXPIRY_DAYS: int = 90
    UNDO_ALLOW_PARTIAL: bool = False

    # Progress broadcasting
    BROADCAST_ENABLED: bool = False
    BROADCAST_THROTTLE_MS: int = 500

    # Audit trail
    AUDIT_ENABLED: bool = True
    AUDIT_LOG_AFFECTED_IDS: bool = True
    AUDIT_AFFECTED_IDS_LIMIT: int = 10000
    AUDIT_WEBHOOK_URL: str = ""

    # Rate limiting
    RATE_LIMITING_ENABLED: bool = True
    MAX_ATTEMPTS_PER_WINDOW: int = 60
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    MAX_CONCURRENT_ACTIONS: int = 5
    MAX_RECORDS_PER_ACTION: int = 100000
    COOLDOWN_SECONDS: int = 60
    LARGE_ACTION_THRESHOLD: int = 10000

    # Authorization
    AUTHORIZATION_ENABLED: bool = True
    AUTHORIZATION_USE_POLICIES: bool = True

    # Scheduling
    SCHEDULING_ENABLED: bool = True
    MAX_SCHEDULED_DAYS_AHEAD: int = 365

    # Dry run
    DRY_RUN_PREVIEW_LIMIT: int = 100

    # Export
    EXPORT_DIRECTORY: str = "./storage/bulk-action-exports"

    # Retention (days)
    EXECUTION_RETENTION_DAYS: int = 30
    PROGRESS_RETENTION_DAYS: int = 7
    AUDIT_RETENTION_DAYS: int = 90

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def clamp_batch_size(self, size: int) -> int:
        """Keep a requested batch size within the configured bounds."""
        return max(self.MIN_BATCH_SIZE, min(size, self.MAX_BATCH_SIZE))

    def clamp_undo_days(self, days: int) -> int:
        """Keep an undo window within the configured maximum."""
        return max(0, min(days, self.UNDO_MAX_EXPIRY_DAYS))

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
