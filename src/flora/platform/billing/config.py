"""
Billing module configuration
"""

from pydantic import BaseModel, ConfigDict, Field

from flora.platform.billing.exceptions import BillingConfigurationError


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict()

    api_key: str = Field(..., description="Stripe API key")
    publishable_key: str | None = Field(None, description="Stripe publishable key")
    webhook_secret: str | None = Field(None, description="Stripe webhook secret")
    max_network_retries: int = Field(3, description="Transport retries for transient errors")


class CurrencyConfig(BaseModel):
    """Currency configuration - single currency support"""

    model_config = ConfigDict()

    default_currency: str = Field("AUD", description="Default currency code")
    locale: str = Field("en_AU", description="Locale for formatting amounts")


class RetryPolicyConfig(BaseModel):
    """Failed payment retry configuration"""

    model_config = ConfigDict()

    retry_interval_days: int = Field(3, ge=1, description="Days between retry attempts")
    max_failed_attempts: int = Field(3, ge=1, description="Attempts before expiry")
    terminal_decline_codes: frozenset[str] = Field(
        default_factory=frozenset,
        description="Decline codes that expire the subscription immediately",
    )


class SchedulerConfig(BaseModel):
    """Renewal scheduler configuration"""

    model_config = ConfigDict()

    concurrency: int = Field(10, ge=1, description="Concurrent renewals per run")
    batch_size: int | None = Field(None, ge=1, description="Max subscriptions per run")
    claim_timeout_seconds: int = Field(900, ge=1, description="Claim lock timeout")
    conflict_retry_attempts: int = Field(3, ge=1, description="Reload-and-retry attempts")


def _default_currency_config() -> CurrencyConfig:
    """Create default CurrencyConfig instance"""
    return CurrencyConfig(default_currency="AUD", locale="en_AU")


def _default_retry_config() -> RetryPolicyConfig:
    """Create default RetryPolicyConfig instance"""
    return RetryPolicyConfig(retry_interval_days=3, max_failed_attempts=3)


def _default_scheduler_config() -> SchedulerConfig:
    """Create default SchedulerConfig instance"""
    return SchedulerConfig(
        concurrency=10, batch_size=None, claim_timeout_seconds=900, conflict_retry_attempts=3
    )


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    stripe: StripeConfig | None = None

    currency: CurrencyConfig = Field(default_factory=_default_currency_config)
    retry: RetryPolicyConfig = Field(default_factory=_default_retry_config)
    scheduler: SchedulerConfig = Field(default_factory=_default_scheduler_config)

    notifications_enabled: bool = Field(True, description="Send customer notifications")

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Create configuration from the application settings"""
        from flora.platform.settings import settings

        stripe_config = None
        if settings.stripe.api_key:
            stripe_config = StripeConfig(
                api_key=settings.stripe.api_key,
                publishable_key=settings.stripe.publishable_key or None,
                webhook_secret=settings.stripe.webhook_secret or None,
                max_network_retries=settings.stripe.max_network_retries,
            )

        return cls(
            stripe=stripe_config,
            currency=CurrencyConfig(
                default_currency=settings.billing.default_currency,
                locale=settings.billing.locale,
            ),
            retry=RetryPolicyConfig(
                retry_interval_days=settings.billing.retry_interval_days,
                max_failed_attempts=settings.billing.max_failed_attempts,
                terminal_decline_codes=frozenset(settings.billing.terminal_decline_codes),
            ),
            scheduler=SchedulerConfig(
                concurrency=settings.billing.scheduler_concurrency,
                batch_size=settings.billing.scheduler_batch_size,
                claim_timeout_seconds=settings.billing.claim_timeout_seconds,
                conflict_retry_attempts=settings.billing.conflict_retry_attempts,
            ),
            notifications_enabled=settings.notifications.enabled,
        )

    def require_stripe(self) -> StripeConfig:
        """Return the Stripe configuration or fail loudly when it is absent"""
        if self.stripe is None:
            raise BillingConfigurationError(
                "Stripe is not configured",
                config_key="STRIPE__API_KEY",
                recovery_hint="Set STRIPE__API_KEY to enable off-session charges",
            )
        return self.stripe


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
