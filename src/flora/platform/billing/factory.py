"""
Wiring of the renewal engine from application settings.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flora.platform.billing.catalog import HttpInventoryGate
from flora.platform.billing.config import BillingConfig, get_billing_config
from flora.platform.billing.ledger.service import BillingLedger
from flora.platform.billing.notifications import build_notification_sink
from flora.platform.billing.payments.stripe_gateway import StripePaymentGateway
from flora.platform.billing.renewals.executor import BillingExecutor
from flora.platform.billing.renewals.scheduler import RenewalScheduler
from flora.platform.billing.subscriptions.service import SubscriptionService
from flora.platform.billing.subscriptions.store import SubscriptionStore
from flora.platform.db import dispose_engine, get_session_factory


def _with_batch_size(config: BillingConfig, batch_size: int | None) -> BillingConfig:
    if batch_size is None:
        return config
    scheduler = config.scheduler.model_copy(update={"batch_size": batch_size})
    return config.model_copy(update={"scheduler": scheduler})


@asynccontextmanager
async def renewal_scheduler(
    batch_size: int | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[RenewalScheduler]:
    """Build a scheduler with production adapters and release them afterwards."""
    config = _with_batch_size(get_billing_config(), batch_size)
    session_factory = session_factory or get_session_factory()

    store = SubscriptionStore(session_factory)
    inventory = HttpInventoryGate.from_settings()
    executor = BillingExecutor(
        store=store,
        ledger=BillingLedger(session_factory),
        inventory=inventory,
        gateway=StripePaymentGateway.from_config(config),
        notifier=build_notification_sink(),
        config=config,
    )
    try:
        yield RenewalScheduler(store, executor, config)
    finally:
        await inventory.close()
        await dispose_engine()


@asynccontextmanager
async def subscription_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    with_gateway: bool = False,
) -> AsyncIterator[SubscriptionService]:
    config = get_billing_config()
    session_factory = session_factory or get_session_factory()
    try:
        yield SubscriptionService(
            store=SubscriptionStore(session_factory),
            ledger=BillingLedger(session_factory),
            gateway=StripePaymentGateway.from_config(config) if with_gateway else None,
            conflict_retry_attempts=config.scheduler.conflict_retry_attempts,
        )
    finally:
        await dispose_engine()
