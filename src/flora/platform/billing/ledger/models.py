"""
Billing ledger models.

Billing events are immutable facts about renewal attempts. Renewal orders
snapshot what was charged for a successful renewal, at the prices quoted at
charge time.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class BillingEventKind(str, Enum):
    """Ledger entry kinds."""

    RENEWAL_SUCCESS = "renewal_success"
    RENEWAL_FAILED = "renewal_failed"
    ITEMS_SKIPPED = "items_skipped"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"


class SkipReason(str, Enum):
    """Why a line item was left out of a renewal."""

    DISCONTINUED = "discontinued"
    OUT_OF_STOCK = "out_of_stock"
    INSUFFICIENT_STOCK = "insufficient_stock"


class SkippedItem(BaseModel):
    """A subscribed item that could not be fulfilled this cycle."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    reason_code: SkipReason
    reason: str = Field(description="Human readable reason shown to the customer")


def generate_event_id() -> str:
    return f"evt_{uuid4().hex[:16]}"


def generate_order_id() -> str:
    return f"ord_{uuid4().hex[:16]}"


def generate_order_number(now: datetime | None = None) -> str:
    """Customer-facing order number, e.g. ``SUB-20240115-1A2B3C4D``."""
    now = now or datetime.now(UTC)
    return f"SUB-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


class LedgerEntry(BaseModel):
    """An entry to append to the ledger."""

    kind: BillingEventKind
    subscription_id: str
    amount_cents: int | None = Field(None, ge=0)
    skipped_items: list[SkippedItem] = Field(default_factory=list)
    gateway_transaction_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempt_key: str | None = Field(
        None, description="Idempotency token of the charge attempt, unique across the ledger"
    )
    cycle_at: datetime | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class BillingEvent(LedgerEntry):
    """A recorded, immutable ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str | None = None
    sequence: int = 0
    created_at: datetime


class RenewalOrderItem(BaseModel):
    """Line of a renewal order, priced at charge time."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = Field(ge=1)
    unit_price_cents: int = Field(ge=0)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class RenewalOrderDraft(BaseModel):
    """Order snapshot to record together with a successful charge."""

    subscription_id: str
    customer_id: str
    total_cents: int = Field(ge=0)
    currency: str = "AUD"
    gateway_transaction_ref: str
    shipping_address: dict[str, Any] | None = None
    items: list[RenewalOrderItem] = Field(min_length=1)


class RenewalOrder(RenewalOrderDraft):
    """Recorded renewal order."""

    id: str
    order_number: str
    billing_event_id: str
    created_at: datetime
