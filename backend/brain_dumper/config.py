"""
Application configuration using Pydantic settings.
"""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "Brain Dumper Scheduling Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Security
    SECRET_KEY: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"

    # Database
    DATABASE_URL: Optional[str] = None
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "brain_dumper"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Google Calendar
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    WEBHOOK_BASE_URL: Optional[str] = None

    # Watch channels
    WATCH_TTL_DAYS: int = 7
    WATCH_RENEWAL_THRESHOLD_HOURS: int = 24
    WATCH_RENEWAL_INTERVAL_SECONDS: int = 3600

    # Sync
    SYNC_LOOKBACK_DAYS: int = 30
    SYNC_LOOKAHEAD_DAYS: int = 90
    SYNC_PAGE_SIZE: int = 250
    RESCHEDULE_TOLERANCE_SECONDS: int = 60
    PERIODIC_SYNC_INTERVAL_SECONDS: int = 900
    # "redis" shares cursor locks across API and worker processes; "local" is single-process only
    SYNC_LOCK_BACKEND: str = "redis"
    SYNC_LOCK_TIMEOUT_SECONDS: int = 300
    SYNC_LOCK_WAIT_SECONDS: int = 60

    # Availability and scheduling
    AVAILABILITY_SLOT_MINUTES: int = 30
    MAX_AVAILABILITY_RANGE_DAYS: int = 31
    SCHEDULING_HORIZON_DAYS: int = 7
    SLOT_GRANULARITY_MINUTES: int = 15
    SUGGESTION_CACHE_TTL_SECONDS: int = 300
    PROPOSAL_TTL_MINUTES: int = 60

    # Remote write retries
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 8.0

    # Celery
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    def get_database_url(self) -> str:
        """Get database URL, constructing from components if not provided."""
        from urllib.parse import quote_plus

        if self.DATABASE_URL:
            return self.DATABASE_URL
        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql://{self.POSTGRES_USER}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def webhook_url(self) -> Optional[str]:
        """Public address Google should deliver push notifications to."""
        if not self.WEBHOOK_BASE_URL:
            return None
        return self.WEBHOOK_BASE_URL.rstrip("/") + "/api/v1/webhooks/calendar"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Set Celery URLs based on Redis URL if not explicitly set
        if not self.CELERY_BROKER_URL:
            self.CELERY_BROKER_URL = self.REDIS_URL.replace('/0', '/1')
        if not self.CELERY_RESULT_BACKEND:
            self.CELERY_RESULT_BACKEND = self.REDIS_URL.replace('/0', '/2')


# Create settings instance
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()

settings = get_settings()
