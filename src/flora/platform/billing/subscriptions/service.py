"""
User-initiated subscription actions.

Pause, resume and cancel go through the state machine and the store's
optimistic save. If a renewal currently holds the subscription's claim the
action is queued on the row instead and the scheduler applies it once the
renewal has finished.
"""

from datetime import UTC, datetime

import structlog
from pydantic import BaseModel

from flora.platform.billing.exceptions import ConcurrentModificationError
from flora.platform.billing.ledger.models import BillingEventKind, LedgerEntry
from flora.platform.billing.ledger.service import BillingLedger
from flora.platform.billing.payments.gateway import PaymentGateway
from flora.platform.billing.subscriptions import state
from flora.platform.billing.subscriptions.models import PendingAction, Subscription
from flora.platform.billing.subscriptions.store import SubscriptionStore
from flora.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


class ActionResult(BaseModel):
    """Result of a user action; ``queued`` means it waits for a running renewal."""

    subscription: Subscription
    action: PendingAction
    queued: bool = False


class SubscriptionService:
    """Customer-facing subscription operations."""

    def __init__(
        self,
        store: SubscriptionStore,
        ledger: BillingLedger,
        gateway: PaymentGateway | None = None,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.conflict_retry_attempts = conflict_retry_attempts

    async def pause(
        self, subscription_id: str, user_id: str | None = None, now: datetime | None = None
    ) -> ActionResult:
        return await self._perform(subscription_id, PendingAction.PAUSE, user_id, now)

    async def resume(
        self, subscription_id: str, user_id: str | None = None, now: datetime | None = None
    ) -> ActionResult:
        return await self._perform(subscription_id, PendingAction.RESUME, user_id, now)

    async def cancel(
        self, subscription_id: str, user_id: str | None = None, now: datetime | None = None
    ) -> ActionResult:
        return await self._perform(subscription_id, PendingAction.CANCEL, user_id, now)

    async def _perform(
        self,
        subscription_id: str,
        action: PendingAction,
        user_id: str | None,
        now: datetime | None,
    ) -> ActionResult:
        now = now or datetime.now(UTC)

        for attempt in range(1, self.conflict_retry_attempts + 1):
            current = await self.store.get(subscription_id)
            # Raises SubscriptionStateError before anything is queued or saved
            changed = state.apply_action(current, action, now)

            if await self.store.queue_action(subscription_id, action, now):
                self._audit(action, subscription_id, user_id, queued=True)
                return ActionResult(subscription=current, action=action, queued=True)

            try:
                saved = await self.store.save(changed, now=now)
            except ConcurrentModificationError:
                logger.info(
                    "subscription.action.conflict",
                    subscription_id=subscription_id,
                    action=action.value,
                    attempt=attempt,
                )
                if attempt == self.conflict_retry_attempts:
                    raise
                continue

            self._audit(action, subscription_id, user_id, queued=False)
            return ActionResult(subscription=saved, action=action)

        raise AssertionError("unreachable")  # pragma: no cover

    async def attach_payment_method(
        self,
        subscription_id: str,
        customer_ref: str,
        payment_ref: str,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Save a payment method; a subscription waiting for one becomes due again."""
        now = now or datetime.now(UTC)

        if self.gateway is not None:
            await self.gateway.attach_payment_method(customer_ref, payment_ref)

        updated = await self.store.attach_payment_method(
            subscription_id,
            customer_ref,
            payment_ref,
            now,
            attempts=self.conflict_retry_attempts,
        )
        await self.ledger.append(
            [
                LedgerEntry(
                    kind=BillingEventKind.PAYMENT_METHOD_ATTACHED,
                    subscription_id=subscription_id,
                    details={"gateway_customer_ref": customer_ref, "gateway_payment_ref": payment_ref},
                )
            ],
            now=now,
        )

        log_audit_event(
            action="subscription.payment_method_attached",
            category="billing",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return updated

    def _audit(
        self, action: PendingAction, subscription_id: str, user_id: str | None, queued: bool
    ) -> None:
        log_audit_event(
            action=f"subscription.{action.value}",
            category="billing",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            queued=queued,
        )
