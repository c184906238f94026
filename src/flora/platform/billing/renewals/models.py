"""
Renewal outcome models.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from flora.platform.billing.ledger.models import SkippedItem
from flora.platform.billing.subscriptions.models import Subscription


class OutcomeKind(str, Enum):
    """Result of a single renewal attempt."""

    SUCCESS = "success"
    SKIPPED_ALL = "skipped_all"
    FAILED = "failed"
    EXPIRED = "expired"
    PAYMENT_METHOD_MISSING = "payment_method_missing"
    DEFERRED = "deferred"


class PricedItem(BaseModel):
    """A line item that can be fulfilled, at its live price."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    unit_price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class RenewalOutcome(BaseModel):
    """What happened when a subscription was renewed."""

    kind: OutcomeKind
    subscription_id: str
    subscription: Subscription | None = Field(None, description="State after the attempt")
    attempt_key: str | None = None
    amount_cents: int | None = None
    transaction_ref: str | None = None
    order_number: str | None = None
    charged_items: list[PricedItem] = Field(default_factory=list)
    skipped_items: list[SkippedItem] = Field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    replayed: bool = Field(False, description="Recovered from an already recorded attempt")


class RenewalRunSummary(BaseModel):
    """Counts for one scheduler pass."""

    started_at: datetime
    finished_at: datetime | None = None
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
    payment_method_missing: int = 0
    deferred: int = 0
    already_claimed: int = 0
    conflicts: int = 0
    errors: int = 0

    def record(self, kind: OutcomeKind) -> None:
        field = {
            OutcomeKind.SUCCESS: "succeeded",
            OutcomeKind.SKIPPED_ALL: "skipped",
            OutcomeKind.FAILED: "failed",
            OutcomeKind.EXPIRED: "expired",
            OutcomeKind.PAYMENT_METHOD_MISSING: "payment_method_missing",
            OutcomeKind.DEFERRED: "deferred",
        }[kind]
        setattr(self, field, getattr(self, field) + 1)

    @property
    def processed(self) -> int:
        return (
            self.succeeded
            + self.failed
            + self.expired
            + self.skipped
            + self.payment_method_missing
            + self.deferred
        )
