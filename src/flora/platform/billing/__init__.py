"""
Subscription renewal and off-session billing.

Provides:
- Subscription store and lifecycle state machine
- Renewal executor, retry policy and scheduler
- Append-only billing ledger with renewal order snapshots
- Payment gateway, inventory gate and notification adapters
"""

from flora.platform.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    ConcurrentModificationError,
    DuplicateLedgerEntryError,
    GatewayError,
    InventoryUnavailableError,
    PaymentError,
    PaymentMethodMissingError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)

__all__ = [
    "BillingError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionStateError",
    "ConcurrentModificationError",
    "PaymentError",
    "GatewayError",
    "PaymentMethodMissingError",
    "InventoryUnavailableError",
    "DuplicateLedgerEntryError",
    "BillingConfigurationError",
]
