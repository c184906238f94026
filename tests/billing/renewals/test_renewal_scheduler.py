"""Tests for renewal scheduler passes."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from flora.platform.billing.catalog import StaticInventoryGate
from flora.platform.billing.config import BillingConfig, SchedulerConfig
from flora.platform.billing.renewals.executor import BillingExecutor
from flora.platform.billing.renewals.scheduler import RenewalScheduler, default_owner
from flora.platform.billing.subscriptions.models import PendingAction, SubscriptionStatus
from flora.platform.billing.subscriptions.service import SubscriptionService
from tests.billing.fakes import FakePaymentGateway

pytestmark = pytest.mark.integration


class CancellingGateway(FakePaymentGateway):
    """Customer cancels while the charge is in flight."""

    def __init__(self, service, now):
        super().__init__()
        self.service = service
        self.now = now
        self.results = []

    async def charge_off_session(self, *args, **kwargs):
        self.results.append(
            await self.service.cancel(kwargs["metadata"]["subscription_id"], now=self.now)
        )
        return await super().charge_off_session(*args, **kwargs)


class ExplodingGateway(FakePaymentGateway):
    async def charge_off_session(self, *args, **kwargs):
        raise RuntimeError("unexpected SDK failure")


class SlowInventory(StaticInventoryGate):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def get_current_price_and_stock(self, product_id):
        await asyncio.sleep(self.delay)
        return await super().get_current_price_and_stock(product_id)


class TakeoverInventory(StaticInventoryGate):
    """Another worker takes the claim over while prices are looked up."""

    def __init__(self, store, at):
        super().__init__()
        self.store = store
        self.at = at
        self.subscription_id = None

    async def get_current_price_and_stock(self, product_id):
        assert await self.store.claim(
            self.subscription_id, self.at, "scheduler-b", timedelta(minutes=15)
        )
        return await super().get_current_price_and_stock(product_id)


class RivalClaimGateway(FakePaymentGateway):
    """Records whether a second worker could claim while the charge runs."""

    def __init__(self, store, timeout):
        super().__init__()
        self.store = store
        self.timeout = timeout
        self.rival_claims = []

    async def charge_off_session(self, *args, **kwargs):
        self.rival_claims.append(
            await self.store.claim(
                kwargs["metadata"]["subscription_id"],
                datetime.now(UTC),
                "scheduler-b",
                self.timeout,
            )
        )
        return await super().charge_off_session(*args, **kwargs)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_summary_counts_each_outcome(
        self, scheduler, create_subscription, gateway, now
    ):
        await create_subscription(customer_id="cust_ok")
        declined = await create_subscription(customer_id="cust_declined")
        await create_subscription(
            customer_id="cust_no_card", gateway_customer_ref=None, gateway_payment_ref=None
        )
        await create_subscription(first_renewal_at=now + timedelta(days=1))
        # Charges run concurrently, so decline by subscription id
        original = gateway.charge_off_session

        async def charge(**kwargs):
            if kwargs["metadata"]["subscription_id"] == declined.id:
                gateway.decline()
            return await original(**kwargs)

        gateway.charge_off_session = charge

        summary = await scheduler.run_once(now)

        assert summary.due == 3
        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.payment_method_missing == 1
        assert summary.processed == 3
        assert summary.errors == 0
        assert summary.finished_at is not None

    @pytest.mark.asyncio
    async def test_batch_size_limits_the_pass(
        self, store, executor, create_subscription, now
    ):
        for _ in range(3):
            await create_subscription()
        scheduler = RenewalScheduler(
            store, executor, BillingConfig(scheduler=SchedulerConfig(batch_size=2)), owner="a"
        )

        summary = await scheduler.run_once(now)

        assert summary.due == 2
        assert summary.succeeded == 2

    @pytest.mark.asyncio
    async def test_expired_subscription_is_not_selected_again(
        self, scheduler, store, create_subscription, gateway, now
    ):
        sub = await create_subscription(first_renewal_at=now - timedelta(days=6))
        await store.update(
            sub.id,
            lambda current: current.model_copy(
                update={
                    "status": SubscriptionStatus.PAYMENT_FAILED,
                    "failed_attempt_count": 2,
                    "next_retry_at": now,
                }
            ),
        )
        gateway.decline()

        first = await scheduler.run_once(now)
        second = await scheduler.run_once(now + timedelta(days=30))

        assert first.expired == 1
        assert second.due == 0
        assert len(gateway.charges) == 1


class TestExclusivity:
    @pytest.mark.asyncio
    async def test_claimed_subscription_is_skipped(
        self, scheduler, store, create_subscription, gateway, now
    ):
        sub = await create_subscription()
        await store.claim(sub.id, now, "scheduler-b", scheduler.claim_timeout)

        summary = await scheduler.run_once(now)

        assert summary.already_claimed == 1
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_overlapping_passes_charge_once(
        self, store, executor, billing_config, create_subscription, gateway, now
    ):
        for _ in range(5):
            await create_subscription()
        schedulers = [
            RenewalScheduler(store, executor, billing_config, owner=f"scheduler-{i}")
            for i in range(3)
        ]

        summaries = await asyncio.gather(*(s.run_once(now) for s in schedulers))

        assert sum(summary.succeeded for summary in summaries) == 5
        assert len(gateway.charges) == 5
        assert len({charge["idempotency_key"] for charge in gateway.charges}) == 5

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(
        self, scheduler, store, create_subscription, now
    ):
        sub = await create_subscription()
        await store.claim(sub.id, now - timedelta(hours=1), "crashed-worker", timedelta(minutes=15))

        summary = await scheduler.run_once(now)

        assert summary.succeeded == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_claim(
        self, store, ledger, inventory, notifier, billing_config, create_subscription, now
    ):
        executor = BillingExecutor(
            store, ledger, inventory, ExplodingGateway(), notifier, config=billing_config
        )
        scheduler = RenewalScheduler(store, executor, billing_config, owner="scheduler-a")
        sub = await create_subscription()

        summary = await scheduler.run_once(now)

        assert summary.errors == 1
        assert (await store.get(sub.id)).next_renewal_at == now
        assert await store.claim(sub.id, now, "scheduler-b", scheduler.claim_timeout)

    @pytest.mark.asyncio
    async def test_claims_taken_late_in_a_pass_stay_live(
        self, store, ledger, notifier, create_subscription
    ):
        config = BillingConfig(
            scheduler=SchedulerConfig(concurrency=1, claim_timeout_seconds=1),
            notifications_enabled=False,
        )
        inventory = SlowInventory(delay=1.2)
        inventory.set_quote("rose-bouquet", price_cents=2000, available_qty=50)
        gateway = RivalClaimGateway(store, timedelta(seconds=1))
        executor = BillingExecutor(store, ledger, inventory, gateway, notifier, config=config)
        scheduler = RenewalScheduler(store, executor, config, owner="scheduler-a")
        for _ in range(2):
            await create_subscription()

        summary = await scheduler.run_once(datetime.now(UTC))

        assert summary.succeeded == 2
        assert gateway.rival_claims == [False, False]

    @pytest.mark.asyncio
    async def test_claim_lost_while_quoting_is_not_charged(
        self, store, ledger, gateway, notifier, billing_config, create_subscription, now
    ):
        inventory = TakeoverInventory(store, at=now + timedelta(hours=1))
        inventory.set_quote("rose-bouquet", price_cents=2000, available_qty=50)
        executor = BillingExecutor(store, ledger, inventory, gateway, notifier, config=billing_config)
        scheduler = RenewalScheduler(store, executor, billing_config, owner="scheduler-a")
        sub = await create_subscription()
        inventory.subscription_id = sub.id

        summary = await scheduler.run_once(now)

        assert summary.conflicts == 1
        assert gateway.charges == []
        assert await ledger.list_for_subscription(sub.id) == []
        assert (await store.get(sub.id)).next_renewal_at == now


class TestPendingActions:
    @pytest.mark.asyncio
    async def test_cancel_during_renewal_applies_after_release(
        self, store, ledger, inventory, notifier, billing_config, create_subscription, now
    ):
        service = SubscriptionService(store, ledger)
        gateway = CancellingGateway(service, now)
        executor = BillingExecutor(
            store, ledger, inventory, gateway, notifier, config=billing_config
        )
        scheduler = RenewalScheduler(store, executor, billing_config, owner="scheduler-a")
        sub = await create_subscription()

        summary = await scheduler.run_once(now)

        assert summary.succeeded == 1
        assert gateway.results[0].queued
        final = await store.get(sub.id)
        assert final.status == SubscriptionStatus.CANCELLED
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_rejected_pending_action_is_dropped(self, scheduler, create_subscription):
        sub = await create_subscription()

        await scheduler.apply_pending_action(sub.id, PendingAction.RESUME)

        assert (await scheduler.store.get(sub.id)).status == SubscriptionStatus.ACTIVE


def test_default_owner_is_unique():
    assert default_owner() != default_owner()
