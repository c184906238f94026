"""
Renewal scheduler.

One pass loads every due subscription and renews each under an exclusive
claim. Distinct subscriptions are renewed concurrently, bounded by a
semaphore; a single subscription is never renewed by two overlapping
attempts because only the claim holder proceeds.
"""

import asyncio
import socket
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import structlog

from flora.platform.billing.config import BillingConfig, get_billing_config
from flora.platform.billing.exceptions import (
    BillingError,
    ConcurrentModificationError,
    SubscriptionStateError,
)
from flora.platform.billing.renewals.executor import BillingExecutor
from flora.platform.billing.renewals.models import RenewalRunSummary
from flora.platform.billing.subscriptions import state
from flora.platform.billing.subscriptions.models import PendingAction, Subscription
from flora.platform.billing.subscriptions.store import ClaimLease, SubscriptionStore

logger = structlog.get_logger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{uuid4().hex[:8]}"


def pass_clock(started_at: datetime) -> Callable[[], datetime]:
    """Return a clock that reads ``started_at`` plus the time elapsed since now."""
    origin = time.monotonic()

    def clock() -> datetime:
        return started_at + timedelta(seconds=time.monotonic() - origin)

    return clock


class RenewalScheduler:
    """Drives renewal passes over due subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        executor: BillingExecutor,
        config: BillingConfig | None = None,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.config = config or get_billing_config()
        self.owner = owner or default_owner()

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(seconds=self.config.scheduler.claim_timeout_seconds)

    async def run_once(self, now: datetime | None = None) -> RenewalRunSummary:
        """Renew everything due at ``now`` and return the pass summary."""
        now = now or datetime.now(UTC)
        summary = RenewalRunSummary(started_at=now)

        due = await self.store.load_due(now, limit=self.config.scheduler.batch_size)
        summary.due = len(due)
        logger.info("renewal.run.started", owner=self.owner, due=summary.due)

        semaphore = asyncio.Semaphore(self.config.scheduler.concurrency)
        clock = pass_clock(now)

        async def worker(subscription: Subscription) -> None:
            async with semaphore:
                await self._process(subscription, now, clock, summary)

        await asyncio.gather(*(worker(subscription) for subscription in due))

        summary.finished_at = datetime.now(UTC)
        logger.info("renewal.run.finished", owner=self.owner, **summary.model_dump(mode="json"))
        return summary

    async def _process(
        self,
        subscription: Subscription,
        now: datetime,
        clock: Callable[[], datetime],
        summary: RenewalRunSummary,
    ) -> None:
        log = logger.bind(subscription_id=subscription.id, owner=self.owner)

        # Claims run on the clock; due dates are judged at the pass time
        if not await self.store.claim(subscription.id, clock(), self.owner, self.claim_timeout):
            log.info("renewal.already_claimed")
            summary.already_claimed += 1
            return

        try:
            # Reload under the claim; the row may have moved since load_due
            current = await self.store.get(subscription.id)
            if not current.is_due(now):
                log.info("renewal.no_longer_due", status=current.status.value)
                return

            lease = ClaimLease(self.store, subscription.id, self.owner, self.claim_timeout, clock)
            outcome = await self.executor.renew(current, now, lease=lease)
            summary.record(outcome.kind)
            log.info("renewal.outcome", kind=outcome.kind.value, replayed=outcome.replayed)
        except ConcurrentModificationError:
            log.warning("renewal.conflict")
            summary.conflicts += 1
        except Exception as e:
            log.error("renewal.error", error=str(e), exc_info=True)
            summary.errors += 1
        finally:
            pending = await self.store.release(subscription.id, self.owner)
            if pending is not None:
                await self.apply_pending_action(subscription.id, pending)

    async def apply_pending_action(self, subscription_id: str, action: PendingAction) -> None:
        """Apply a user action that arrived while the renewal held the claim."""
        now = datetime.now(UTC)
        try:
            updated = await self.store.update(
                subscription_id,
                lambda current: state.apply_action(current, action, now),
                attempts=self.config.scheduler.conflict_retry_attempts,
            )
        except SubscriptionStateError as e:
            # e.g. a pause queued behind a renewal that expired the subscription
            logger.warning(
                "subscription.pending_action.rejected",
                subscription_id=subscription_id,
                action=action.value,
                error=e.message,
            )
            return
        except BillingError as e:
            logger.error(
                "subscription.pending_action.failed",
                subscription_id=subscription_id,
                action=action.value,
                error=e.message,
            )
            return

        logger.info(
            "subscription.pending_action.applied",
            subscription_id=subscription_id,
            action=action.value,
            status=updated.status.value,
        )
