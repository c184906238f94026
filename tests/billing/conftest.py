"""Shared fixtures for billing tests."""

from datetime import UTC, datetime

import pytest

from flora.platform.billing.catalog import StaticInventoryGate
from flora.platform.billing.config import BillingConfig, SchedulerConfig
from flora.platform.billing.ledger.service import BillingLedger
from flora.platform.billing.renewals.executor import BillingExecutor
from flora.platform.billing.renewals.policy import RetryPolicy
from flora.platform.billing.renewals.scheduler import RenewalScheduler
from flora.platform.billing.subscriptions.models import (
    Cadence,
    LineItem,
    NewSubscription,
    ShippingAddress,
)
from flora.platform.billing.subscriptions.store import SubscriptionStore
from tests.billing.fakes import FakePaymentGateway, RecordingNotificationSink

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def billing_config():
    return BillingConfig(
        scheduler=SchedulerConfig(
            concurrency=4, batch_size=None, claim_timeout_seconds=900, conflict_retry_attempts=3
        ),
    )


@pytest.fixture
def store(session_factory):
    return SubscriptionStore(session_factory)


@pytest.fixture
def ledger(session_factory):
    return BillingLedger(session_factory)


@pytest.fixture
def inventory():
    gate = StaticInventoryGate()
    gate.set_quote("rose-bouquet", price_cents=2000, available_qty=50)
    gate.set_quote("tulip-bunch", price_cents=1500, available_qty=50)
    return gate


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def policy():
    return RetryPolicy()


@pytest.fixture
def executor(store, ledger, inventory, gateway, notifier, policy, billing_config):
    return BillingExecutor(
        store=store,
        ledger=ledger,
        inventory=inventory,
        gateway=gateway,
        notifier=notifier,
        policy=policy,
        config=billing_config,
    )


@pytest.fixture
def scheduler(store, executor, billing_config):
    return RenewalScheduler(store, executor, billing_config, owner="scheduler-a")


@pytest.fixture
def new_subscription(now):
    """Build checkout input; override any field with keyword arguments."""

    def _build(**overrides) -> NewSubscription:
        data = {
            "customer_id": "cust_001",
            "customer_email": "ada@example.com",
            "cadence": Cadence.MONTHLY,
            "items": [LineItem(product_id="rose-bouquet", quantity=2)],
            "shipping_address": ShippingAddress(
                first_name="Ada",
                last_name="Lovelace",
                street1="1 Flower St",
                city="Sydney",
                state="NSW",
                postal_code="2000",
            ),
            "gateway_customer_ref": "cus_ada",
            "gateway_payment_ref": "pm_visa",
            "first_renewal_at": now,
        }
        data.update(overrides)
        return NewSubscription(**data)

    return _build


@pytest.fixture
def create_subscription(store, new_subscription):
    """Persist a subscription and return it."""

    async def _create(**overrides):
        return await store.create(new_subscription(**overrides))

    return _create
