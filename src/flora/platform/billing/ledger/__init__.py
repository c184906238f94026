"""
Append-only billing ledger and renewal order snapshots.
"""

from flora.platform.billing.ledger.models import (
    BillingEvent,
    BillingEventKind,
    LedgerEntry,
    RenewalOrder,
    RenewalOrderDraft,
    RenewalOrderItem,
    SkippedItem,
    SkipReason,
)
from flora.platform.billing.ledger.service import BillingLedger

__all__ = [
    "BillingEvent",
    "BillingEventKind",
    "BillingLedger",
    "LedgerEntry",
    "RenewalOrder",
    "RenewalOrderDraft",
    "RenewalOrderItem",
    "SkippedItem",
    "SkipReason",
]
