"""
Application configuration management.

Loads settings from environment variables via .env file. One settings
object serves the control API, the consumer and coordinator workers and
the browser-backed extractor.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Sensitive values (database credentials, proxy passwords) belong in the
    .env file, which is not committed.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "License Harvester"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=False, description="Enable debug mode")
    worker_version: str = "1.0.0"

    # API Configuration
    api_prefix: str = "/api/v1"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)"
    )

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    # Database
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/harvester",
        description="SQLAlchemy async database URL (asyncpg in production)"
    )
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)
    database_pool_timeout: int = Field(default=30, ge=5, le=120)
    database_ssl: bool = Field(default=False, description="Require SSL for PostgreSQL")
    database_echo: bool = Field(default=False, description="Echo SQL queries")

    # Queue
    queue_name: str = "scrape-jobs"
    queue_batch_size: int = Field(default=10, ge=1, le=10)
    queue_visibility_timeout: int = Field(
        default=300,
        ge=1,
        description="Seconds a received message stays hidden from other consumers"
    )
    queue_max_deliveries: int = Field(
        default=10,
        ge=1,
        description="Deliveries after which the queue dead-letters a message on its own"
    )
    queue_poll_interval: float = Field(default=5.0, ge=0.0)

    # Retry policy
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Transient failures retried before a work item is marked failed"
    )
    retry_min_wait: float = Field(default=60.0, ge=0.0, description="Base backoff in seconds")
    retry_max_wait: float = Field(default=3600.0, ge=0.0, description="Backoff cap in seconds")
    failed_requeue_hours: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay before a failed item is eligible for re-seeding"
    )

    # Consumer
    consumer_instances: int = Field(default=2, ge=1, le=32)
    extractor_timeout_seconds: float = Field(default=120.0, gt=0)
    extractor_result_limit: int = Field(default=50, ge=1)
    rate_limit_max_wait_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Upper bound on local sleeping while a source's rate window is full"
    )
    default_requests_per_second: float = Field(default=1.0, gt=0)
    bot_throttle_minutes: float = Field(
        default=30.0,
        ge=0.0,
        description="How long a source is blocked after a bot-detection page"
    )

    # Seeder
    seed_mode: Literal["test", "production"] = "test"
    seed_professions: str = Field(
        default="real_estate",
        description="Professions to enumerate (comma-separated)"
    )
    refresh_after_days: float = Field(default=7.0, ge=0.0)
    publish_max_attempts: int = Field(default=3, ge=1, le=10)
    publish_retry_wait: float = Field(default=0.5, ge=0.0, description="Base publish backoff in seconds")

    @property
    def professions(self) -> list[str]:
        """Get seed professions as a list."""
        return [p.strip() for p in self.seed_professions.split(",") if p.strip()]

    # Coordinator
    coordinator_interval_seconds: float = Field(default=300.0, gt=0)
    queue_low_water_mark: int = Field(default=50, ge=0)
    queue_max_depth: int = Field(default=10000, ge=1)
    error_rate_alert_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    queue_stale_minutes: float = Field(default=30.0, gt=0)
    worker_stale_minutes: float = Field(default=5.0, gt=0)
    seed_trigger_url: str | None = Field(
        default=None,
        description="Remote control API seed endpoint; the in-process seeder is used when unset"
    )
    seed_trigger_timeout: float = Field(default=60.0, gt=0)

    # Crawler (Playwright)
    crawler_timeout: int = Field(default=30000, ge=1000, description="Default page timeout (ms)")
    crawler_navigation_timeout: int = Field(default=45000, ge=1000, description="Navigation timeout (ms)")
    crawler_user_agent: str | None = Field(
        default=None,
        description="Fixed user agent; a random stealth agent is used when unset"
    )
    crawler_stealth_mode: bool = True
    crawler_viewport_width: int = 1920
    crawler_viewport_height: int = 1080
    crawler_random_delay_min: float = Field(default=0.5, ge=0.0)
    crawler_random_delay_max: float = Field(default=2.0, ge=0.0)
    crawler_proxy_url: str | None = Field(
        default=None,
        description="HTTP/SOCKS5 proxy URL for crawling (e.g., http://proxy:8080)"
    )
    crawler_proxy_username: str | None = None
    crawler_proxy_password: str | None = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    @field_validator("database_url", mode="before")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Ensure PostgreSQL URLs use the asyncpg driver."""
        if v and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        if v and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("crawler_random_delay_max")
    @classmethod
    def validate_delay_range(cls, v: float, info) -> float:
        """Keep the random delay range ordered."""
        low = info.data.get("crawler_random_delay_min", 0.0)
        return max(v, low)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
