"""
Subscription state machine.

Every transition is a pure function: it validates the current status,
returns an updated copy of the subscription and leaves persistence to the
store. Terminal states (CANCELLED, EXPIRED) reject every transition.
"""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from flora.platform.billing.exceptions import SubscriptionStateError
from flora.platform.billing.subscriptions.models import (
    LAST_ERROR_MAX_LENGTH,
    PendingAction,
    Subscription,
    SubscriptionStatus,
)

if TYPE_CHECKING:
    from flora.platform.billing.renewals.policy import RetryDecision

BILLABLE_STATES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED})


def _require(subscription: Subscription, allowed: frozenset[SubscriptionStatus], target: str) -> None:
    if subscription.status not in allowed:
        raise SubscriptionStateError(
            f"Subscription {subscription.id} is {subscription.status.value}",
            current_state=subscription.status.value,
            requested_state=target,
        )


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:LAST_ERROR_MAX_LENGTH]


def next_renewal_after_success(subscription: Subscription, now: datetime) -> datetime:
    """Schedule the following renewal after a successful charge.

    A retry success restarts the cadence from ``now``. A regular renewal
    keeps its rhythm, unless the missed date is so old that one period later
    is still in the past.
    """
    if subscription.status == SubscriptionStatus.PAYMENT_FAILED:
        return subscription.advance(now)

    anchor = subscription.next_renewal_at or now
    next_at = subscription.advance(anchor)
    if next_at <= now:
        next_at = subscription.advance(now)
    return next_at


def apply_renewal_success(subscription: Subscription, now: datetime) -> Subscription:
    _require(subscription, BILLABLE_STATES, SubscriptionStatus.ACTIVE.value)
    return subscription.model_copy(
        update={
            "status": SubscriptionStatus.ACTIVE,
            "next_renewal_at": next_renewal_after_success(subscription, now),
            "failed_attempt_count": 0,
            "next_retry_at": None,
            "last_billing_attempt_at": now,
            "last_billing_error": None,
            "awaiting_payment_method": False,
        }
    )


def apply_renewal_failure(
    subscription: Subscription, decision: "RetryDecision", error_message: str, now: datetime
) -> Subscription:
    _require(subscription, BILLABLE_STATES, decision.next_status.value)
    update: dict[str, object] = {
        "status": decision.next_status,
        "failed_attempt_count": decision.failed_attempt_count,
        "next_retry_at": decision.next_retry_at,
        "last_billing_attempt_at": now,
        "last_billing_error": truncate_error(error_message),
    }
    if decision.next_status == SubscriptionStatus.EXPIRED:
        update["expired_at"] = now
        update["next_renewal_at"] = None
    return subscription.model_copy(update=update)


def apply_items_skipped(subscription: Subscription, now: datetime) -> Subscription:
    """Nothing was in stock: move the due date one cadence period, count untouched."""
    _require(subscription, BILLABLE_STATES, subscription.status.value)
    update: dict[str, object] = {"last_billing_attempt_at": now}
    if subscription.status == SubscriptionStatus.PAYMENT_FAILED:
        update["next_retry_at"] = subscription.advance(subscription.next_retry_at or now)
    else:
        update["next_renewal_at"] = subscription.advance(subscription.next_renewal_at or now)
    return subscription.model_copy(update=update)


def reopen_cycle(subscription: Subscription, now: datetime) -> dict[str, datetime]:
    """Move the due date of a cycle closed by a missing payment method.

    The closed cycle already has its failure entry, so the next charge must
    belong to a new cycle with its own attempt key: the new due date is a
    whole second strictly after the old one.
    """
    due = subscription.due_at
    if due is None or subscription.status not in BILLABLE_STATES:
        return {}
    anchor = max(now.replace(microsecond=0), due.replace(microsecond=0) + timedelta(seconds=1))
    if subscription.status == SubscriptionStatus.PAYMENT_FAILED:
        return {"next_retry_at": anchor}
    return {"next_renewal_at": anchor}


def apply_payment_method_missing(
    subscription: Subscription, error_message: str, now: datetime
) -> Subscription:
    """Park the subscription until the customer attaches a payment method.

    A method attached while the attempt was running leaves the subscription
    due in a new cycle, so the next pass charges it.
    """
    _require(subscription, BILLABLE_STATES, subscription.status.value)
    update: dict[str, object] = {
        "awaiting_payment_method": not subscription.has_payment_method,
        "last_billing_attempt_at": now,
        "last_billing_error": truncate_error(error_message),
    }
    if subscription.has_payment_method:
        update.update(reopen_cycle(subscription, now))
    return subscription.model_copy(update=update)


def attach_payment_method(
    subscription: Subscription, customer_ref: str, payment_ref: str, now: datetime
) -> Subscription:
    if subscription.status.is_terminal:
        raise SubscriptionStateError(
            f"Cannot attach a payment method to {subscription.status.value} subscription",
            current_state=subscription.status.value,
            requested_state=subscription.status.value,
        )
    update: dict[str, object] = {
        "gateway_customer_ref": customer_ref,
        "gateway_payment_ref": payment_ref,
        "awaiting_payment_method": False,
    }
    if subscription.awaiting_payment_method:
        update.update(reopen_cycle(subscription, now))
    return subscription.model_copy(update=update)


def pause(subscription: Subscription, now: datetime) -> Subscription:
    _require(subscription, BILLABLE_STATES, SubscriptionStatus.PAUSED.value)
    return subscription.model_copy(
        update={
            "status": SubscriptionStatus.PAUSED,
            "next_retry_at": None,
            "paused_at": now,
        }
    )


def resume(subscription: Subscription, now: datetime) -> Subscription:
    _require(subscription, frozenset({SubscriptionStatus.PAUSED}), SubscriptionStatus.ACTIVE.value)
    return subscription.model_copy(
        update={
            "status": SubscriptionStatus.ACTIVE,
            "next_renewal_at": subscription.advance(now),
            "failed_attempt_count": 0,
            "next_retry_at": None,
            "paused_at": None,
        }
    )


def cancel(subscription: Subscription, now: datetime) -> Subscription:
    _require(
        subscription,
        BILLABLE_STATES | {SubscriptionStatus.PAUSED},
        SubscriptionStatus.CANCELLED.value,
    )
    return subscription.model_copy(
        update={
            "status": SubscriptionStatus.CANCELLED,
            "next_renewal_at": None,
            "next_retry_at": None,
            "cancelled_at": now,
        }
    )


_ACTIONS = {
    PendingAction.PAUSE: pause,
    PendingAction.RESUME: resume,
    PendingAction.CANCEL: cancel,
}


def apply_action(subscription: Subscription, action: PendingAction, now: datetime) -> Subscription:
    """Apply a user-initiated pause, resume or cancel."""
    return _ACTIONS[action](subscription, now)
