"""
Billing executor.

Runs one renewal attempt for a claimed subscription:

1. quote every line item live through the inventory gate
2. skip unavailable items, postpone the cycle if nothing is available
3. charge the saved payment method off-session
4. record the outcome in the ledger
5. apply the state transition through the store
6. notify the customer

The ledger write always precedes the state transition, and the ledger's
unique attempt key means a crash between the two is recovered by replaying
the recorded outcome rather than charging again.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from flora.platform.billing.catalog import InventoryGate, check_availability
from flora.platform.billing.config import BillingConfig, get_billing_config
from flora.platform.billing.exceptions import (
    DuplicateLedgerEntryError,
    GatewayError,
    InventoryUnavailableError,
    PaymentMethodMissingError,
    SubscriptionStateError,
)
from flora.platform.billing.ledger.models import (
    BillingEvent,
    BillingEventKind,
    LedgerEntry,
    RenewalOrderDraft,
    RenewalOrderItem,
    SkippedItem,
)
from flora.platform.billing.ledger.service import BillingLedger
from flora.platform.billing.notifications import (
    NotificationEvent,
    NotificationKind,
    NotificationSink,
    deliver_notification,
)
from flora.platform.billing.payments.gateway import ChargeResult, PaymentGateway
from flora.platform.billing.renewals.models import OutcomeKind, PricedItem, RenewalOutcome
from flora.platform.billing.renewals.policy import (
    ErrorClass,
    RetryDecision,
    RetryPolicy,
    classify_error,
)
from flora.platform.billing.subscriptions import state
from flora.platform.billing.subscriptions.models import Subscription
from flora.platform.billing.subscriptions.store import ClaimLease, SubscriptionStore

logger = structlog.get_logger(__name__)

PAYMENT_METHOD_MISSING_CODE = "PAYMENT_METHOD_MISSING"


def build_attempt_key(subscription_id: str, cycle_at: datetime) -> str:
    """Deterministic idempotency token for charging one billing cycle."""
    return f"renewal:{subscription_id}:{int(cycle_at.timestamp())}"


class BillingExecutor:
    """Executes renewal attempts for subscriptions the caller has claimed."""

    def __init__(
        self,
        store: SubscriptionStore,
        ledger: BillingLedger,
        inventory: InventoryGate,
        gateway: PaymentGateway,
        notifier: NotificationSink,
        policy: RetryPolicy | None = None,
        config: BillingConfig | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.inventory = inventory
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or get_billing_config()
        self.policy = policy or RetryPolicy.from_config(self.config.retry)

    async def renew(
        self, subscription: Subscription, now: datetime, lease: ClaimLease | None = None
    ) -> RenewalOutcome:
        """Attempt the renewal that is due for ``subscription`` at ``now``.

        When ``lease`` is given the claim is refreshed right before charging,
        so a claim that lapsed during quoting never leads to a charge or a
        ledger write.

        Raises:
            SubscriptionStateError: the subscription is not ACTIVE or PAYMENT_FAILED
            ConcurrentModificationError: the claim was taken over during quoting,
                or the transition kept conflicting and the recorded outcome is
                replayed on the next pass
        """
        cycle_at = subscription.due_at
        if subscription.status not in state.BILLABLE_STATES or cycle_at is None:
            raise SubscriptionStateError(
                f"Subscription {subscription.id} has nothing to renew",
                current_state=subscription.status.value,
                requested_state="renewal",
            )

        attempt_key = build_attempt_key(subscription.id, cycle_at)
        log = logger.bind(subscription_id=subscription.id, attempt_key=attempt_key)

        recorded = await self.ledger.get_attempt(attempt_key)
        if recorded is not None:
            log.warning("renewal.replay", recorded_kind=recorded.kind.value)
            return await self._replay(subscription, recorded, cycle_at)

        try:
            available, skipped = await self._quote_items(subscription)
        except InventoryUnavailableError as e:
            log.warning("renewal.deferred", error=e.message)
            return RenewalOutcome(
                kind=OutcomeKind.DEFERRED,
                subscription_id=subscription.id,
                subscription=subscription,
                attempt_key=attempt_key,
                error_code=e.error_code,
                error_message=e.message,
            )

        if lease is not None:
            await lease.refresh()

        if not available:
            return await self._skip_all(subscription, skipped, attempt_key, cycle_at, now)

        total_cents = sum(item.line_total_cents for item in available)

        if not subscription.has_payment_method:
            error = PaymentMethodMissingError(
                "No saved payment method for off-session renewal", subscription_id=subscription.id
            )
            return await self._payment_method_missing(
                subscription, error, total_cents, skipped, cycle_at, now
            )

        metadata = {
            "subscription_id": subscription.id,
            "customer_id": subscription.customer_id,
            "cycle_timestamp": str(int(cycle_at.timestamp())),
        }
        try:
            charge = await self.gateway.charge_off_session(
                customer_ref=subscription.gateway_customer_ref,
                payment_ref=subscription.gateway_payment_ref,
                amount_cents=total_cents,
                idempotency_key=attempt_key,
                metadata=metadata,
            )
        except GatewayError as e:
            log.info("renewal.charge.failed", code=e.code, transient=e.transient)
            return await self._record_failure(
                subscription, e, available, total_cents, attempt_key, cycle_at, now
            )

        log.info(
            "renewal.charge.succeeded",
            amount_cents=total_cents,
            transaction_ref=charge.transaction_ref,
        )
        return await self._record_success(
            subscription, charge, available, skipped, total_cents, attempt_key, cycle_at, now
        )

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    async def _quote_items(
        self, subscription: Subscription
    ) -> tuple[list[PricedItem], list[SkippedItem]]:
        quotes = await asyncio.gather(
            *(
                self.inventory.get_current_price_and_stock(item.product_id)
                for item in subscription.items
            )
        )

        available: list[PricedItem] = []
        skipped: list[SkippedItem] = []
        for item, quote in zip(subscription.items, quotes, strict=True):
            skip = check_availability(item, quote)
            if skip is not None:
                skipped.append(skip)
                continue
            available.append(
                PricedItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_cents=quote.price_cents,
                )
            )
        return available, skipped

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _transition(
        self,
        subscription_id: str,
        cycle_at: datetime,
        mutate: Callable[[Subscription], Subscription],
    ) -> Subscription:
        """Apply ``mutate`` unless the cycle it belongs to was already settled."""

        def guarded(current: Subscription) -> Subscription:
            if current.status not in state.BILLABLE_STATES or current.due_at != cycle_at:
                return current
            return mutate(current)

        return await self.store.update(
            subscription_id, guarded, attempts=self.config.scheduler.conflict_retry_attempts
        )

    async def _record_success(
        self,
        subscription: Subscription,
        charge: ChargeResult,
        available: list[PricedItem],
        skipped: list[SkippedItem],
        total_cents: int,
        attempt_key: str,
        cycle_at: datetime,
        now: datetime,
    ) -> RenewalOutcome:
        entries = [
            LedgerEntry(
                kind=BillingEventKind.RENEWAL_SUCCESS,
                subscription_id=subscription.id,
                amount_cents=total_cents,
                gateway_transaction_ref=charge.transaction_ref,
                attempt_key=attempt_key,
                cycle_at=cycle_at,
                details={"items": [item.model_dump() for item in available]},
            )
        ]
        if skipped:
            entries.append(
                LedgerEntry(
                    kind=BillingEventKind.ITEMS_SKIPPED,
                    subscription_id=subscription.id,
                    skipped_items=skipped,
                    cycle_at=cycle_at,
                )
            )
        order = RenewalOrderDraft(
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            total_cents=total_cents,
            currency=self.config.currency.default_currency,
            gateway_transaction_ref=charge.transaction_ref,
            shipping_address=(
                subscription.shipping_address.model_dump() if subscription.shipping_address else None
            ),
            items=[
                RenewalOrderItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                )
                for item in available
            ],
        )

        try:
            events = await self.ledger.append(entries, order=order, now=now)
        except DuplicateLedgerEntryError:
            recorded = await self.ledger.get_attempt(attempt_key)
            if recorded is None:
                raise
            return await self._replay(subscription, recorded, cycle_at)

        return await self._settle_success(subscription, events[0], skipped, cycle_at, replayed=False)

    async def _settle_success(
        self,
        subscription: Subscription,
        event: BillingEvent,
        skipped: list[SkippedItem],
        cycle_at: datetime,
        replayed: bool,
    ) -> RenewalOutcome:
        updated = await self._transition(
            subscription.id,
            cycle_at,
            lambda current: state.apply_renewal_success(current, event.created_at),
        )
        order = await self.ledger.get_order(event.order_id) if event.order_id else None
        charged = [PricedItem.model_validate(item) for item in event.details.get("items", [])]

        await self._notify(
            NotificationKind.RENEWAL_SUCCEEDED,
            updated,
            amount_cents=event.amount_cents,
            order_number=order.order_number if order else None,
            next_renewal_at=updated.next_renewal_at,
            skipped_items=skipped,
        )
        return RenewalOutcome(
            kind=OutcomeKind.SUCCESS,
            subscription_id=subscription.id,
            subscription=updated,
            attempt_key=event.attempt_key,
            amount_cents=event.amount_cents,
            transaction_ref=event.gateway_transaction_ref,
            order_number=order.order_number if order else None,
            charged_items=charged,
            skipped_items=skipped,
            replayed=replayed,
        )

    async def _record_failure(
        self,
        subscription: Subscription,
        error: GatewayError,
        available: list[PricedItem],
        total_cents: int,
        attempt_key: str,
        cycle_at: datetime,
        now: datetime,
    ) -> RenewalOutcome:
        error_class = classify_error(error)
        decision = self.policy.decide(
            subscription.failed_attempt_count, error_class, now, decline_code=error.decline_code
        )

        entries = [
            LedgerEntry(
                kind=BillingEventKind.RENEWAL_FAILED,
                subscription_id=subscription.id,
                amount_cents=total_cents,
                error_code=error.code,
                error_message=error.message,
                attempt_key=attempt_key,
                cycle_at=cycle_at,
                details={
                    "error_class": error_class.value,
                    "decline_code": error.decline_code,
                    "attempt": decision.failed_attempt_count,
                    "items": [item.model_dump() for item in available],
                },
            )
        ]
        if decision.expired:
            entries.append(
                LedgerEntry(
                    kind=BillingEventKind.SUBSCRIPTION_EXPIRED,
                    subscription_id=subscription.id,
                    error_code=error.code,
                    error_message=error.message,
                    cycle_at=cycle_at,
                    details={"failed_attempt_count": decision.failed_attempt_count},
                )
            )

        try:
            events = await self.ledger.append(entries, now=now)
        except DuplicateLedgerEntryError:
            recorded = await self.ledger.get_attempt(attempt_key)
            if recorded is None:
                raise
            return await self._replay(subscription, recorded, cycle_at)

        return await self._settle_failure(subscription, events, decision, cycle_at, replayed=False)

    async def _settle_failure(
        self,
        subscription: Subscription,
        events: list[BillingEvent],
        decision: RetryDecision,
        cycle_at: datetime,
        replayed: bool,
    ) -> RenewalOutcome:
        failure = events[0]
        updated = await self._transition(
            subscription.id,
            cycle_at,
            lambda current: state.apply_renewal_failure(
                current, decision, failure.error_message or "", failure.created_at
            ),
        )

        # The expiry notice covers both the final failure and the expiry entry
        await self._notify(
            NotificationKind.SUBSCRIPTION_EXPIRED
            if decision.expired
            else NotificationKind.RENEWAL_PAYMENT_FAILED,
            updated,
            amount_cents=failure.amount_cents,
            error_message=failure.error_message,
            attempt=decision.failed_attempt_count,
            max_attempts=self.policy.max_failed_attempts,
            next_retry_at=decision.next_retry_at,
            billing_event_ids=[event.id for event in events],
        )

        logger.info(
            "renewal.failure.recorded",
            subscription_id=subscription.id,
            status=updated.status.value,
            failed_attempt_count=updated.failed_attempt_count,
            next_retry_at=updated.next_retry_at,
        )
        return RenewalOutcome(
            kind=OutcomeKind.EXPIRED if decision.expired else OutcomeKind.FAILED,
            subscription_id=subscription.id,
            subscription=updated,
            attempt_key=failure.attempt_key,
            amount_cents=failure.amount_cents,
            error_code=failure.error_code,
            error_message=failure.error_message,
            replayed=replayed,
        )

    async def _skip_all(
        self,
        subscription: Subscription,
        skipped: list[SkippedItem],
        attempt_key: str,
        cycle_at: datetime,
        now: datetime,
    ) -> RenewalOutcome:
        # The postponement closes the cycle, so it takes the cycle's attempt key
        try:
            events = await self.ledger.append(
                [
                    LedgerEntry(
                        kind=BillingEventKind.ITEMS_SKIPPED,
                        subscription_id=subscription.id,
                        skipped_items=skipped,
                        attempt_key=attempt_key,
                        cycle_at=cycle_at,
                        details={"postponed": True},
                    )
                ],
                now=now,
            )
        except DuplicateLedgerEntryError:
            recorded = await self.ledger.get_attempt(attempt_key)
            if recorded is None:
                raise
            return await self._replay(subscription, recorded, cycle_at)

        return await self._settle_skip_all(subscription, events[0], cycle_at, replayed=False)

    async def _settle_skip_all(
        self,
        subscription: Subscription,
        event: BillingEvent,
        cycle_at: datetime,
        replayed: bool,
    ) -> RenewalOutcome:
        skipped = event.skipped_items
        updated = await self._transition(
            subscription.id,
            cycle_at,
            lambda current: state.apply_items_skipped(current, event.created_at),
        )
        logger.info(
            "renewal.postponed",
            subscription_id=subscription.id,
            skipped=[item.product_id for item in skipped],
            next_due_at=updated.due_at,
        )

        await self._notify(
            NotificationKind.RENEWAL_POSTPONED,
            updated,
            skipped_items=skipped,
            next_renewal_at=updated.due_at,
        )
        return RenewalOutcome(
            kind=OutcomeKind.SKIPPED_ALL,
            subscription_id=subscription.id,
            subscription=updated,
            skipped_items=skipped,
            attempt_key=event.attempt_key,
            replayed=replayed,
        )

    async def _payment_method_missing(
        self,
        subscription: Subscription,
        error: PaymentMethodMissingError,
        total_cents: int,
        skipped: list[SkippedItem],
        cycle_at: datetime,
        now: datetime,
    ) -> RenewalOutcome:
        await self.ledger.append(
            [
                LedgerEntry(
                    kind=BillingEventKind.RENEWAL_FAILED,
                    subscription_id=subscription.id,
                    amount_cents=total_cents,
                    error_code=PAYMENT_METHOD_MISSING_CODE,
                    error_message=error.message,
                    cycle_at=cycle_at,
                    details={"error_class": ErrorClass.PAYMENT_METHOD_MISSING.value},
                )
            ],
            now=now,
        )
        updated = await self._transition(
            subscription.id,
            cycle_at,
            lambda current: state.apply_payment_method_missing(current, error.message, now),
        )
        logger.warning("renewal.payment_method_missing", subscription_id=subscription.id)

        await self._notify(NotificationKind.PAYMENT_METHOD_REQUIRED, updated, amount_cents=total_cents)
        return RenewalOutcome(
            kind=OutcomeKind.PAYMENT_METHOD_MISSING,
            subscription_id=subscription.id,
            subscription=updated,
            amount_cents=total_cents,
            skipped_items=skipped,
            error_code=PAYMENT_METHOD_MISSING_CODE,
            error_message=error.message,
        )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _replay(
        self, subscription: Subscription, recorded: BillingEvent, cycle_at: datetime
    ) -> RenewalOutcome:
        """Finish an attempt whose outcome is in the ledger but not yet in the store."""
        if recorded.kind == BillingEventKind.RENEWAL_SUCCESS:
            batch = await self.ledger.list_for_subscription(
                subscription.id, kinds=[BillingEventKind.ITEMS_SKIPPED]
            )
            skipped = [
                item
                for event in batch
                if event.cycle_at == cycle_at and event.created_at == recorded.created_at
                for item in event.skipped_items
            ]
            return await self._settle_success(
                subscription, recorded, skipped, cycle_at, replayed=True
            )
        if recorded.kind == BillingEventKind.ITEMS_SKIPPED:
            return await self._settle_skip_all(subscription, recorded, cycle_at, replayed=True)

        details = recorded.details
        decision = self.policy.decide(
            subscription.failed_attempt_count,
            ErrorClass(details.get("error_class", ErrorClass.DECLINED.value)),
            recorded.created_at,
            decline_code=details.get("decline_code"),
        )
        events = [recorded]
        if decision.expired:
            expired_events = await self.ledger.list_for_subscription(
                subscription.id, kinds=[BillingEventKind.SUBSCRIPTION_EXPIRED]
            )
            events.extend(event for event in expired_events if event.cycle_at == cycle_at)
        return await self._settle_failure(subscription, events, decision, cycle_at, replayed=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify(
        self, kind: NotificationKind, subscription: Subscription, **payload: Any
    ) -> None:
        if not self.config.notifications_enabled:
            return

        body: dict[str, Any] = {
            "customer_email": subscription.customer_email,
            "cadence": subscription.cadence.value,
            "currency": self.config.currency.default_currency,
        }
        for key, value in payload.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif key == "skipped_items":
                value = [item.model_dump(mode="json") for item in value]
            body[key] = value

        await deliver_notification(
            self.notifier,
            NotificationEvent(
                kind=kind,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                payload=body,
            ),
        )
