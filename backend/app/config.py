"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Matter Workflow Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Workflow runtime
    # Retries applied when a save loses an optimistic-concurrency race
    WORKFLOW_CONFLICT_RETRIES: int = 3
    WORKFLOW_CONFLICT_BASE_DELAY: float = 0.05

    # Notifications
    WORKFLOW_NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATION_CHANNELS: str = "in_app"  # comma separated: in_app, email, webhook
    NOTIFICATION_QUEUE_SIZE: int = 1000
    NOTIFICATION_WEBHOOK_URL: str = ""
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_ADDRESS: str = "workflows@localhost"
    SMTP_USE_TLS: bool = True

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

    @property
    def notification_channels_list(self) -> list[str]:
        """Parse NOTIFICATION_CHANNELS string into a list."""
        return [ch.strip().lower() for ch in self.NOTIFICATION_CHANNELS.split(",") if ch.strip()]

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
