"""
Billing ledger service.

Entries are only ever appended. Entries recorded together (for example a
RENEWAL_SUCCESS, the ITEMS_SKIPPED that accompanies a partial renewal and
the renewal order) are written in a single transaction.
"""

from collections.abc import Sequence
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flora.platform.billing.exceptions import DuplicateLedgerEntryError
from flora.platform.billing.ledger.entities import (
    BillingEventTable,
    RenewalOrderItemTable,
    RenewalOrderTable,
)
from flora.platform.billing.ledger.models import (
    BillingEvent,
    BillingEventKind,
    LedgerEntry,
    RenewalOrder,
    RenewalOrderDraft,
    RenewalOrderItem,
    SkippedItem,
    generate_event_id,
    generate_order_id,
    generate_order_number,
)
from flora.platform.db import get_session_factory

logger = structlog.get_logger(__name__)


def _event_to_domain(row: BillingEventTable) -> BillingEvent:
    return BillingEvent(
        id=row.id,
        kind=BillingEventKind(row.kind),
        subscription_id=row.subscription_id,
        amount_cents=row.amount_cents,
        skipped_items=[SkippedItem.model_validate(item) for item in row.skipped_items or []],
        gateway_transaction_ref=row.gateway_transaction_ref,
        error_code=row.error_code,
        error_message=row.error_message,
        attempt_key=row.attempt_key,
        cycle_at=row.cycle_at,
        details=row.details or {},
        order_id=row.order_id,
        sequence=row.sequence,
        created_at=row.created_at,
    )


def _order_to_domain(row: RenewalOrderTable) -> RenewalOrder:
    return RenewalOrder(
        id=row.id,
        order_number=row.order_number,
        subscription_id=row.subscription_id,
        customer_id=row.customer_id,
        billing_event_id=row.billing_event_id,
        total_cents=row.total_cents,
        currency=row.currency,
        gateway_transaction_ref=row.gateway_transaction_ref,
        shipping_address=row.shipping_address,
        items=[
            RenewalOrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
            )
            for item in row.items
        ],
        created_at=row.created_at,
    )


class BillingLedger:
    """Authoritative, append-only record of billing outcomes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or get_session_factory()

    async def append(
        self,
        entries: Sequence[LedgerEntry],
        order: RenewalOrderDraft | None = None,
        now: datetime | None = None,
    ) -> list[BillingEvent]:
        """Atomically append ``entries`` and, for a success, its renewal order.

        The order is linked to the RENEWAL_SUCCESS entry of the batch.

        Raises:
            DuplicateLedgerEntryError: an entry's attempt key or gateway
                transaction reference is already recorded
        """
        if not entries:
            return []
        now = now or datetime.now(UTC)

        event_rows = [
            BillingEventTable(
                id=generate_event_id(),
                subscription_id=entry.subscription_id,
                kind=entry.kind.value,
                amount_cents=entry.amount_cents,
                skipped_items=[item.model_dump(mode="json") for item in entry.skipped_items],
                gateway_transaction_ref=entry.gateway_transaction_ref,
                error_code=entry.error_code,
                error_message=entry.error_message,
                attempt_key=entry.attempt_key,
                cycle_at=entry.cycle_at,
                details=entry.details,
                sequence=sequence,
                created_at=now,
            )
            for sequence, entry in enumerate(entries)
        ]

        order_row = None
        if order is not None:
            success_row = next(
                (row for row in event_rows if row.kind == BillingEventKind.RENEWAL_SUCCESS.value),
                None,
            )
            if success_row is None:
                raise ValueError("a renewal order needs a RENEWAL_SUCCESS entry in the same batch")
            order_row = RenewalOrderTable(
                id=generate_order_id(),
                order_number=generate_order_number(now),
                subscription_id=order.subscription_id,
                customer_id=order.customer_id,
                billing_event_id=success_row.id,
                total_cents=order.total_cents,
                currency=order.currency,
                gateway_transaction_ref=order.gateway_transaction_ref,
                shipping_address=order.shipping_address,
                created_at=now,
                items=[
                    RenewalOrderItemTable(
                        position=position,
                        product_id=item.product_id,
                        quantity=item.quantity,
                        unit_price_cents=item.unit_price_cents,
                        line_total_cents=item.line_total_cents,
                    )
                    for position, item in enumerate(order.items)
                ],
            )
            success_row.order_id = order_row.id

        attempt_key = next((entry.attempt_key for entry in entries if entry.attempt_key), None)
        try:
            async with self._session_factory() as session, session.begin():
                session.add_all(event_rows)
                if order_row is not None:
                    session.add(order_row)
        except IntegrityError as exc:
            logger.warning(
                "ledger.append.duplicate",
                subscription_id=entries[0].subscription_id,
                attempt_key=attempt_key,
            )
            raise DuplicateLedgerEntryError(
                "Billing attempt already recorded", attempt_key=attempt_key
            ) from exc

        logger.info(
            "ledger.append",
            subscription_id=entries[0].subscription_id,
            kinds=[entry.kind.value for entry in entries],
            order_number=order_row.order_number if order_row is not None else None,
        )
        return [_event_to_domain(row) for row in event_rows]

    async def get_attempt(self, attempt_key: str) -> BillingEvent | None:
        """The entry that closed a billing cycle: success, failure or postponement."""
        async with self._session_factory() as session:
            row = await session.scalar(
                select(BillingEventTable).where(BillingEventTable.attempt_key == attempt_key)
            )
            return _event_to_domain(row) if row is not None else None

    async def list_for_subscription(
        self,
        subscription_id: str,
        kinds: Sequence[BillingEventKind] | None = None,
    ) -> list[BillingEvent]:
        stmt = select(BillingEventTable).where(
            BillingEventTable.subscription_id == subscription_id
        )
        if kinds:
            stmt = stmt.where(BillingEventTable.kind.in_([kind.value for kind in kinds]))
        stmt = stmt.order_by(BillingEventTable.created_at, BillingEventTable.sequence)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_event_to_domain(row) for row in result.scalars().all()]

    async def get_order(self, order_id: str) -> RenewalOrder | None:
        async with self._session_factory() as session:
            row = await session.get(RenewalOrderTable, order_id)
            return _order_to_domain(row) if row is not None else None

    async def list_orders_for_subscription(self, subscription_id: str) -> list[RenewalOrder]:
        stmt = (
            select(RenewalOrderTable)
            .where(RenewalOrderTable.subscription_id == subscription_id)
            .order_by(RenewalOrderTable.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_order_to_domain(row) for row in result.scalars().all()]
