"""
Subscription domain models.

Pydantic models describing a recurring-delivery subscription as the renewal
engine sees it, plus the cadence arithmetic used to schedule renewals.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Diagnostic strings stored on the subscription are for human display only
LAST_ERROR_MAX_LENGTH = 500


class Cadence(str, Enum):
    """Recurring delivery interval."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    SPONTANEOUS = "spontaneous"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class PendingAction(str, Enum):
    """User action queued while a renewal holds the subscription claim."""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_by_cadence(
    value: datetime, cadence: Cadence, spontaneous_frequency: Cadence | None = None
) -> datetime:
    """Return ``value`` moved forward by exactly one cadence period."""
    if cadence == Cadence.SPONTANEOUS:
        if spontaneous_frequency is None or spontaneous_frequency == Cadence.SPONTANEOUS:
            raise ValueError("spontaneous subscriptions need a weekly, biweekly or monthly frequency")
        cadence = spontaneous_frequency

    if cadence == Cadence.WEEKLY:
        return value + timedelta(days=7)
    if cadence == Cadence.BIWEEKLY:
        return value + timedelta(days=14)
    if cadence == Cadence.MONTHLY:
        return add_months(value, 1)
    raise ValueError(f"Unsupported cadence: {cadence}")


class LineItem(BaseModel):
    """A subscribed product and quantity; price is looked up at renewal time."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class ShippingAddress(BaseModel):
    """Postal address snapshot taken at checkout."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    first_name: str
    last_name: str
    street1: str
    street2: str | None = None
    city: str
    state: str
    postal_code: str
    country: str = "AU"
    phone: str | None = None


class Subscription(BaseModel):
    """Recurring delivery subscription.

    Instances are treated as values: state transitions return updated copies
    and the store persists them through its optimistic ``save`` path.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    customer_email: str | None = None

    cadence: Cadence
    spontaneous_frequency: Cadence | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    # Billing identity
    gateway_customer_ref: str | None = None
    gateway_payment_ref: str | None = None
    awaiting_payment_method: bool = False

    # Schedule
    next_renewal_at: datetime | None = None
    last_billing_attempt_at: datetime | None = None
    last_billing_error: str | None = Field(None, max_length=LAST_ERROR_MAX_LENGTH)

    # Failure tracking
    failed_attempt_count: int = Field(0, ge=0)
    next_retry_at: datetime | None = None

    items: list[LineItem] = Field(default_factory=list)
    shipping_address: ShippingAddress | None = None

    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Optimistic concurrency token, owned by the store
    version: int = 0

    @model_validator(mode="after")
    def _check_cadence(self) -> "Subscription":
        if self.cadence == Cadence.SPONTANEOUS and self.spontaneous_frequency in (
            None,
            Cadence.SPONTANEOUS,
        ):
            raise ValueError("spontaneous subscriptions need a spontaneous_frequency")
        return self

    @property
    def has_payment_method(self) -> bool:
        return bool(self.gateway_customer_ref and self.gateway_payment_ref)

    @property
    def due_at(self) -> datetime | None:
        """The scheduled date the next billing attempt is for."""
        if self.status == SubscriptionStatus.PAYMENT_FAILED:
            return self.next_retry_at
        if self.status == SubscriptionStatus.ACTIVE:
            return self.next_renewal_at
        return None

    def is_due(self, now: datetime) -> bool:
        if self.awaiting_payment_method:
            return False
        due = self.due_at
        return due is not None and due <= now

    def advance(self, value: datetime) -> datetime:
        """Move ``value`` forward by one period of this subscription's cadence."""
        return advance_by_cadence(value, self.cadence, self.spontaneous_frequency)

    def check_invariants(self, max_failed_attempts: int = 3) -> None:
        """Raise ValueError if status and failure counters disagree."""
        count = self.failed_attempt_count
        retry_set = self.next_retry_at is not None
        status = self.status

        if status == SubscriptionStatus.ACTIVE and (count != 0 or retry_set):
            raise ValueError("active subscriptions have no failed attempts or pending retry")
        outstanding = 0 < count < max_failed_attempts
        if status == SubscriptionStatus.PAYMENT_FAILED and not (outstanding and retry_set):
            raise ValueError("payment_failed needs outstanding attempts and a retry date")
        exhausted = count == max_failed_attempts
        if status == SubscriptionStatus.EXPIRED and not (exhausted and not retry_set):
            raise ValueError("expired subscriptions have exhausted attempts and no retry date")
        if status in (SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED) and (
            retry_set or count >= max_failed_attempts
        ):
            raise ValueError(f"{status.value} subscriptions have no pending retry")


class NewSubscription(BaseModel):
    """Input for creating a subscription after checkout."""

    customer_id: str
    customer_email: str | None = None
    cadence: Cadence
    spontaneous_frequency: Cadence | None = None
    items: list[LineItem] = Field(min_length=1)
    shipping_address: ShippingAddress | None = None
    gateway_customer_ref: str | None = None
    gateway_payment_ref: str | None = None
    first_renewal_at: datetime


class RetryStats(BaseModel):
    """Counts of subscriptions in the failed-payment pipeline."""

    total_failed: int = 0
    pending_retry: int = 0
    expired: int = 0
    attempt_1: int = 0
    attempt_2: int = 0
    awaiting_payment_method: int = 0
