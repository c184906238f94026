"""
Subscription store.

Durable record of subscription state backed by SQLAlchemy. All writes go
through conditional UPDATE statements:

- ``save`` is guarded by the ``version`` column, so a writer holding a stale
  copy fails with ``ConcurrentModificationError`` instead of clobbering.
- ``claim`` grants exclusive renewal rights until ``claim_expires_at``.
- ``refresh_claim`` pushes the expiry out while the owner still holds it.
- ``queue_action`` parks a user action on a claimed subscription; ``release``
  hands it back to the claim owner.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flora.platform.billing.exceptions import (
    ConcurrentModificationError,
    SubscriptionNotFoundError,
)
from flora.platform.billing.subscriptions import state
from flora.platform.billing.subscriptions.entities import (
    SubscriptionItemTable,
    SubscriptionTable,
)
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
from flora.platform.db import get_session_factory

logger = structlog.get_logger(__name__)

Mutation = Callable[[Subscription], Subscription | Awaitable[Subscription]]


def generate_subscription_id() -> str:
    return f"sub_{uuid4().hex[:16]}"


def _to_domain(row: SubscriptionTable) -> Subscription:
    return Subscription(
        id=row.id,
        customer_id=row.customer_id,
        customer_email=row.customer_email,
        cadence=Cadence(row.cadence),
        spontaneous_frequency=(
            Cadence(row.spontaneous_frequency) if row.spontaneous_frequency else None
        ),
        status=SubscriptionStatus(row.status),
        gateway_customer_ref=row.gateway_customer_ref,
        gateway_payment_ref=row.gateway_payment_ref,
        awaiting_payment_method=row.awaiting_payment_method,
        next_renewal_at=row.next_renewal_at,
        last_billing_attempt_at=row.last_billing_attempt_at,
        last_billing_error=row.last_billing_error,
        failed_attempt_count=row.failed_attempt_count,
        next_retry_at=row.next_retry_at,
        items=[LineItem(product_id=item.product_id, quantity=item.quantity) for item in row.items],
        shipping_address=(
            ShippingAddress.model_validate(row.shipping_address) if row.shipping_address else None
        ),
        paused_at=row.paused_at,
        cancelled_at=row.cancelled_at,
        expired_at=row.expired_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
    )


def _mutable_columns(subscription: Subscription) -> dict[str, Any]:
    """Columns a state transition may change. Identity and basket are fixed."""
    return {
        "status": subscription.status.value,
        "gateway_customer_ref": subscription.gateway_customer_ref,
        "gateway_payment_ref": subscription.gateway_payment_ref,
        "awaiting_payment_method": subscription.awaiting_payment_method,
        "next_renewal_at": subscription.next_renewal_at,
        "last_billing_attempt_at": subscription.last_billing_attempt_at,
        "last_billing_error": subscription.last_billing_error,
        "failed_attempt_count": subscription.failed_attempt_count,
        "next_retry_at": subscription.next_retry_at,
        "paused_at": subscription.paused_at,
        "cancelled_at": subscription.cancelled_at,
        "expired_at": subscription.expired_at,
    }


class SubscriptionStore:
    """Persistence for subscriptions with optimistic concurrency and claims."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, subscription_id: str) -> Subscription:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionTable, subscription_id, populate_existing=True)
            if row is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )
            return _to_domain(row)

    async def load_due(self, now: datetime, limit: int | None = None) -> list[Subscription]:
        """Subscriptions whose first attempt or retry is due at ``now``."""
        due_renewal = and_(
            SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
            SubscriptionTable.next_renewal_at <= now,
        )
        due_retry = and_(
            SubscriptionTable.status == SubscriptionStatus.PAYMENT_FAILED.value,
            SubscriptionTable.next_retry_at <= now,
        )
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.awaiting_payment_method.is_(False),
                or_(due_renewal, due_retry),
            )
            .order_by(
                func.coalesce(SubscriptionTable.next_retry_at, SubscriptionTable.next_renewal_at),
                SubscriptionTable.id,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_domain(row) for row in result.scalars().all()]

    async def list_for_customer(self, customer_id: str) -> list[Subscription]:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.customer_id == customer_id)
            .order_by(SubscriptionTable.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_domain(row) for row in result.scalars().all()]

    async def retry_stats(self) -> RetryStats:
        """Counts of subscriptions in the failed-payment pipeline."""
        failed = SubscriptionStatus.PAYMENT_FAILED.value
        stmt = select(
            func.count().filter(SubscriptionTable.status == failed),
            func.count().filter(
                SubscriptionTable.status == failed, SubscriptionTable.next_retry_at.is_not(None)
            ),
            func.count().filter(SubscriptionTable.status == SubscriptionStatus.EXPIRED.value),
            func.count().filter(
                SubscriptionTable.status == failed, SubscriptionTable.failed_attempt_count == 1
            ),
            func.count().filter(
                SubscriptionTable.status == failed, SubscriptionTable.failed_attempt_count == 2
            ),
            func.count().filter(SubscriptionTable.awaiting_payment_method.is_(True)),
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one()

        return RetryStats(
            total_failed=row[0],
            pending_retry=row[1],
            expired=row[2],
            attempt_1=row[3],
            attempt_2=row[4],
            awaiting_payment_method=row[5],
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        data: NewSubscription,
        subscription_id: str | None = None,
    ) -> Subscription:
        """Persist a subscription created at checkout (first delivery already billed)."""
        subscription = Subscription(
            id=subscription_id or generate_subscription_id(),
            customer_id=data.customer_id,
            customer_email=data.customer_email,
            cadence=data.cadence,
            spontaneous_frequency=data.spontaneous_frequency,
            status=SubscriptionStatus.ACTIVE,
            gateway_customer_ref=data.gateway_customer_ref,
            gateway_payment_ref=data.gateway_payment_ref,
            next_renewal_at=data.first_renewal_at,
            items=data.items,
            shipping_address=data.shipping_address,
        )

        row = SubscriptionTable(
            id=subscription.id,
            customer_id=subscription.customer_id,
            customer_email=subscription.customer_email,
            cadence=subscription.cadence.value,
            spontaneous_frequency=(
                subscription.spontaneous_frequency.value
                if subscription.spontaneous_frequency
                else None
            ),
            shipping_address=(
                subscription.shipping_address.model_dump() if subscription.shipping_address else None
            ),
            version=0,
            items=[
                SubscriptionItemTable(
                    position=position, product_id=item.product_id, quantity=item.quantity
                )
                for position, item in enumerate(subscription.items)
            ],
            **_mutable_columns(subscription),
        )

        async with self._session_factory() as session, session.begin():
            session.add(row)

        logger.info(
            "subscription.created",
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            cadence=subscription.cadence.value,
        )
        return await self.get(subscription.id)

    async def save(self, subscription: Subscription, now: datetime | None = None) -> Subscription:
        """Optimistically persist a transition made on ``subscription``.

        Raises:
            ConcurrentModificationError: stored version differs from ``subscription.version``
            SubscriptionNotFoundError: the id is unknown
        """
        now = now or datetime.now(UTC)
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription.id,
                SubscriptionTable.version == subscription.version,
            )
            .values(
                **_mutable_columns(subscription),
                version=SubscriptionTable.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return subscription.model_copy(
                    update={"version": subscription.version + 1, "updated_at": now}
                )

            exists = await session.scalar(
                select(SubscriptionTable.id).where(SubscriptionTable.id == subscription.id)
            )

        if exists is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription.id} not found", subscription_id=subscription.id
            )
        raise ConcurrentModificationError(
            f"Subscription {subscription.id} was modified concurrently",
            subscription_id=subscription.id,
            expected_version=subscription.version,
        )

    async def update(
        self, subscription_id: str, mutate: Mutation, attempts: int = 3
    ) -> Subscription:
        """Reload, re-run ``mutate`` on the fresh copy and save; retry on conflict."""
        for attempt in range(1, attempts + 1):
            current = await self.get(subscription_id)
            changed = mutate(current)
            if isinstance(changed, Awaitable):
                changed = await changed
            try:
                return await self.save(changed)
            except ConcurrentModificationError:
                logger.info(
                    "subscription.save.conflict",
                    subscription_id=subscription_id,
                    attempt=attempt,
                    attempts=attempts,
                )
                if attempt == attempts:
                    raise
        raise AssertionError("unreachable")  # pragma: no cover

    async def attach_payment_method(
        self,
        subscription_id: str,
        customer_ref: str,
        payment_ref: str,
        now: datetime,
        attempts: int = 3,
    ) -> Subscription:
        return await self.update(
            subscription_id,
            lambda current: state.attach_payment_method(current, customer_ref, payment_ref, now),
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Exclusivity
    # ------------------------------------------------------------------

    async def claim(
        self, subscription_id: str, now: datetime, owner: str, timeout: timedelta
    ) -> bool:
        """Atomically take the renewal claim unless another live claim exists.

        The claim bumps ``version`` so writers that loaded the row before the
        claim cannot save over the renewal in progress.
        """
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                or_(
                    SubscriptionTable.claim_expires_at.is_(None),
                    SubscriptionTable.claim_expires_at <= now,
                ),
            )
            .values(
                claimed_by=owner,
                claim_expires_at=now + timeout,
                version=SubscriptionTable.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            claimed = result.rowcount == 1

        logger.debug(
            "subscription.claim", subscription_id=subscription_id, owner=owner, claimed=claimed
        )
        return claimed

    async def refresh_claim(
        self, subscription_id: str, owner: str, now: datetime, timeout: timedelta
    ) -> bool:
        """Extend a claim ``owner`` still holds; False once another owner took it."""
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.claimed_by == owner,
            )
            .values(claim_expires_at=now + timeout)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def release(self, subscription_id: str, owner: str) -> PendingAction | None:
        """Drop the claim held by ``owner`` and return any action queued meanwhile."""
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.claimed_by == owner,
            )
            .values(
                claimed_by=None,
                claim_expires_at=None,
                pending_action=None,
                version=SubscriptionTable.version + 1,
            )
            .returning(SubscriptionTable.pending_action)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            row = (await session.execute(stmt)).first()

        if row is None:
            logger.warning(
                "subscription.release.not_owner", subscription_id=subscription_id, owner=owner
            )
            return None
        return PendingAction(row[0]) if row[0] else None

    async def queue_action(
        self, subscription_id: str, action: PendingAction, now: datetime
    ) -> bool:
        """Queue ``action`` if a live claim exists; False means apply it directly."""
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription_id,
                SubscriptionTable.claimed_by.is_not(None),
                SubscriptionTable.claim_expires_at > now,
            )
            .values(pending_action=action.value)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount == 1


@dataclass
class ClaimLease:
    """A renewal claim held by ``owner`` on one subscription."""

    store: SubscriptionStore
    subscription_id: str
    owner: str
    timeout: timedelta
    clock: Callable[[], datetime]

    async def refresh(self) -> None:
        """Keep the claim live from the current time on.

        Raises:
            ConcurrentModificationError: the claim lapsed and another owner took it
        """
        if not await self.store.refresh_claim(
            self.subscription_id, self.owner, self.clock(), self.timeout
        ):
            raise ConcurrentModificationError(
                f"Renewal claim on {self.subscription_id} was taken over",
                subscription_id=self.subscription_id,
            )
