"""
Subscription records, lifecycle transitions and user actions.
"""

from flora.platform.billing.subscriptions.models import (
    Cadence,
    LineItem,
    NewSubscription,
    PendingAction,
    RetryStats,
    ShippingAddress,
    Subscription,
    SubscriptionStatus,
)
from flora.platform.billing.subscriptions.store import ClaimLease, SubscriptionStore

__all__ = [
    "Cadence",
    "ClaimLease",
    "LineItem",
    "NewSubscription",
    "PendingAction",
    "RetryStats",
    "ShippingAddress",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionStore",
]
