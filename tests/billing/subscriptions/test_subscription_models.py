"""Tests for subscription models and cadence arithmetic."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from flora.platform.billing.subscriptions.models import (
    Cadence,
    LineItem,
    Subscription,
    SubscriptionStatus,
    add_months,
    advance_by_cadence,
)

pytestmark = pytest.mark.unit

JAN_15 = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


def _subscription(**overrides) -> Subscription:
    data = {
        "id": "sub_1",
        "customer_id": "cust_1",
        "cadence": Cadence.MONTHLY,
        "items": [LineItem(product_id="rose-bouquet", quantity=1)],
        "next_renewal_at": JAN_15,
    }
    data.update(overrides)
    return Subscription(**data)


class TestCadence:
    def test_weekly_and_biweekly_are_fixed_days(self):
        assert advance_by_cadence(JAN_15, Cadence.WEEKLY) == JAN_15 + timedelta(days=7)
        assert advance_by_cadence(JAN_15, Cadence.BIWEEKLY) == JAN_15 + timedelta(days=14)

    def test_monthly_is_one_calendar_month(self):
        assert advance_by_cadence(JAN_15, Cadence.MONTHLY) == datetime(2024, 2, 15, 9, 0, tzinfo=UTC)

    def test_monthly_clamps_to_month_end(self):
        jan_31 = datetime(2024, 1, 31, tzinfo=UTC)
        assert add_months(jan_31, 1) == datetime(2024, 2, 29, tzinfo=UTC)
        assert add_months(datetime(2023, 1, 31, tzinfo=UTC), 1) == datetime(2023, 2, 28, tzinfo=UTC)

    def test_monthly_rolls_over_year(self):
        assert add_months(datetime(2024, 12, 10, tzinfo=UTC), 1) == datetime(2025, 1, 10, tzinfo=UTC)

    def test_spontaneous_uses_its_frequency(self):
        advanced = advance_by_cadence(JAN_15, Cadence.SPONTANEOUS, Cadence.BIWEEKLY)
        assert advanced == JAN_15 + timedelta(days=14)

    def test_spontaneous_without_frequency_is_rejected(self):
        with pytest.raises(ValueError):
            advance_by_cadence(JAN_15, Cadence.SPONTANEOUS)

    def test_subscription_requires_frequency_for_spontaneous(self):
        with pytest.raises(ValidationError):
            _subscription(cadence=Cadence.SPONTANEOUS)


class TestSubscription:
    def test_line_item_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            LineItem(product_id="rose-bouquet", quantity=0)

    def test_has_payment_method_needs_both_refs(self):
        assert not _subscription().has_payment_method
        assert not _subscription(gateway_customer_ref="cus_1").has_payment_method
        assert _subscription(
            gateway_customer_ref="cus_1", gateway_payment_ref="pm_1"
        ).has_payment_method

    def test_active_is_due_on_next_renewal(self):
        sub = _subscription()
        assert sub.due_at == JAN_15
        assert sub.is_due(JAN_15)
        assert not sub.is_due(JAN_15 - timedelta(seconds=1))

    def test_payment_failed_is_due_on_retry(self):
        retry_at = JAN_15 + timedelta(days=3)
        sub = _subscription(
            status=SubscriptionStatus.PAYMENT_FAILED, failed_attempt_count=1, next_retry_at=retry_at
        )
        assert sub.due_at == retry_at
        assert not sub.is_due(JAN_15 + timedelta(days=1))
        assert sub.is_due(retry_at)

    def test_awaiting_payment_method_is_never_due(self):
        sub = _subscription(awaiting_payment_method=True)
        assert not sub.is_due(JAN_15 + timedelta(days=30))

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED]
    )
    def test_inactive_states_are_never_due(self, status):
        assert _subscription(status=status).due_at is None

    def test_invariants_accept_consistent_states(self):
        _subscription().check_invariants()
        _subscription(
            status=SubscriptionStatus.PAYMENT_FAILED,
            failed_attempt_count=2,
            next_retry_at=JAN_15,
        ).check_invariants()
        _subscription(status=SubscriptionStatus.EXPIRED, failed_attempt_count=3).check_invariants()

    def test_invariants_reject_active_with_failures(self):
        with pytest.raises(ValueError):
            _subscription(failed_attempt_count=1).check_invariants()

    def test_invariants_reject_payment_failed_without_retry(self):
        with pytest.raises(ValueError):
            _subscription(
                status=SubscriptionStatus.PAYMENT_FAILED, failed_attempt_count=1
            ).check_invariants()

    def test_invariants_reject_expired_with_retry(self):
        with pytest.raises(ValueError):
            _subscription(
                status=SubscriptionStatus.EXPIRED, failed_attempt_count=3, next_retry_at=JAN_15
            ).check_invariants()
