from __future__ import annotations

"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__RETRY_INTERVAL_DAYS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("flora-renewals", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("flora", description="Database name")
        username: str = Field("flora", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        task_soft_time_limit: int = Field(1800, description="Soft time limit")
        task_time_limit: int = Field(2400, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log entries")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription renewal billing configuration."""

        default_currency: str = Field("AUD", description="Currency used for renewal charges")
        locale: str = Field("en_AU", description="Locale used to format amounts")

        # Retry policy
        retry_interval_days: int = Field(3, description="Days between failed payment retries")
        max_failed_attempts: int = Field(
            3, description="Failed attempts before a subscription expires"
        )
        terminal_decline_codes: list[str] = Field(
            default_factory=list,
            description="Decline codes that expire a subscription without further retries",
        )

        # Scheduler
        auto_process_renewals: bool = Field(
            True, description="Register the periodic renewal task with Celery beat"
        )
        renewal_interval_hours: int = Field(6, description="Hours between scheduler runs")
        scheduler_concurrency: int = Field(
            10, description="Subscriptions processed concurrently per run"
        )
        scheduler_batch_size: int | None = Field(
            None, description="Maximum subscriptions loaded per run (None for all)"
        )
        claim_timeout_seconds: int = Field(
            900, description="Seconds before an abandoned renewal claim expires"
        )
        conflict_retry_attempts: int = Field(
            3, description="Reload-and-retry attempts on concurrent modification"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment Gateway
    # ============================================================

    class StripeSettings(BaseModel):
        """Stripe configuration."""

        api_key: str = Field("", description="Stripe secret API key")
        publishable_key: str = Field("", description="Stripe publishable key")
        webhook_secret: str = Field("", description="Stripe webhook secret")
        max_network_retries: int = Field(
            3, description="Transport-level retries for transient Stripe errors"
        )

    stripe: StripeSettings = StripeSettings()  # type: ignore[call-arg]

    # ============================================================
    # Catalog Service
    # ============================================================

    class CatalogSettings(BaseModel):
        """Catalog/inventory service configuration."""

        base_url: str = Field("http://localhost:4000/api", description="Catalog service URL")
        api_token: str = Field("", description="Service token for the catalog API")
        timeout_seconds: float = Field(10.0, description="Catalog request timeout")

    catalog: CatalogSettings = CatalogSettings()  # type: ignore[call-arg]

    # ============================================================
    # Notifications
    # ============================================================

    class NotificationSettings(BaseModel):
        """Customer notification configuration."""

        enabled: bool = Field(True, description="Send customer notifications")
        email_endpoint: str | None = Field(
            None, description="HTTP endpoint of the transactional email service"
        )
        email_api_key: str = Field("", description="Email service API key")
        from_address: str = Field("subscriptions@flora.example.com", description="Sender")
        frontend_url: str = Field("http://localhost:3000", description="Storefront base URL")

    notifications: NotificationSettings = NotificationSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Accept environment names in any case."""
        if isinstance(v, str):
            return v.lower()
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


# Convenience export
settings = get_settings()
