"""Tests for the Stripe payment gateway adapter."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from flora.platform.billing.config import BillingConfig, StripeConfig
from flora.platform.billing.exceptions import BillingConfigurationError, GatewayError
from flora.platform.billing.payments.stripe_gateway import StripePaymentGateway, map_stripe_error

pytestmark = pytest.mark.unit

KEY = "renewal:sub_1:1705309200"


@pytest.fixture
def stripe_gateway():
    return StripePaymentGateway(api_key="sk_test_123", currency="AUD", retry_wait_seconds=0)


def _card_error(decline_code="insufficient_funds"):
    return stripe.CardError(
        "Your card has insufficient funds.",
        param=None,
        code="card_declined",
        json_body={
            "error": {
                "type": "card_error",
                "code": "card_declined",
                "decline_code": decline_code,
                "message": "Your card has insufficient funds.",
            }
        },
    )


async def _charge(gateway):
    return await gateway.charge_off_session(
        customer_ref="cus_ada",
        payment_ref="pm_visa",
        amount_cents=4000,
        idempotency_key=KEY,
        metadata={"subscription_id": "sub_1"},
    )


class TestErrorMapping:
    def test_card_error_is_a_decline(self):
        mapped = map_stripe_error(_card_error())

        assert not mapped.transient
        assert mapped.code == "card_declined"
        assert mapped.decline_code == "insufficient_funds"
        assert mapped.message == "Your card has insufficient funds."

    @pytest.mark.parametrize(
        "error",
        [
            stripe.RateLimitError("Too many requests"),
            stripe.APIConnectionError("Connection reset"),
            stripe.APIError("Internal error"),
        ],
    )
    def test_processor_outages_are_transient(self, error):
        assert map_stripe_error(error).transient

    @pytest.mark.parametrize(
        "error",
        [
            stripe.AuthenticationError("Invalid API key"),
            stripe.InvalidRequestError("No such payment_method", param="payment_method"),
        ],
    )
    def test_request_errors_are_not_transient(self, error):
        assert not map_stripe_error(error).transient


class TestChargeOffSession:
    @pytest.mark.asyncio
    async def test_successful_charge(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="pi_123", status="succeeded"))

        with patch.object(stripe.PaymentIntent, "create", create):
            result = await _charge(stripe_gateway)

        assert result.transaction_ref == "pi_123"
        assert result.amount_cents == 4000
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 4000
        assert kwargs["currency"] == "aud"
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == KEY
        assert kwargs["api_key"] == "sk_test_123"

    @pytest.mark.asyncio
    async def test_decline_is_not_retried(self, stripe_gateway):
        create = MagicMock(side_effect=_card_error())

        with patch.object(stripe.PaymentIntent, "create", create):
            with pytest.raises(GatewayError) as exc_info:
                await _charge(stripe_gateway)

        assert create.call_count == 1
        assert exc_info.value.decline_code == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_same_key(self, stripe_gateway):
        create = MagicMock(
            side_effect=[
                stripe.APIConnectionError("Connection reset"),
                stripe.RateLimitError("Too many requests"),
                SimpleNamespace(id="pi_123", status="succeeded"),
            ]
        )

        with patch.object(stripe.PaymentIntent, "create", create):
            result = await _charge(stripe_gateway)

        assert result.transaction_ref == "pi_123"
        assert create.call_count == 3
        assert {call.kwargs["idempotency_key"] for call in create.call_args_list} == {KEY}

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        gateway = StripePaymentGateway(api_key="sk_test", max_network_retries=1, retry_wait_seconds=0)
        create = MagicMock(side_effect=stripe.APIError("Internal error"))

        with patch.object(stripe.PaymentIntent, "create", create):
            with pytest.raises(GatewayError) as exc_info:
                await _charge(gateway)

        assert create.call_count == 2
        assert exc_info.value.transient

    @pytest.mark.asyncio
    async def test_unsettled_intent_is_a_failure(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="pi_123", status="requires_action"))

        with patch.object(stripe.PaymentIntent, "create", create):
            with pytest.raises(GatewayError) as exc_info:
                await _charge(stripe_gateway)

        assert exc_info.value.code == "requires_action"
        assert not exc_info.value.transient


class TestCustomerSetup:
    @pytest.mark.asyncio
    async def test_attach_sets_default_method(self, stripe_gateway):
        attach = MagicMock()
        modify = MagicMock()

        with (
            patch.object(stripe.PaymentMethod, "attach", attach),
            patch.object(stripe.Customer, "modify", modify),
        ):
            await stripe_gateway.attach_payment_method("cus_ada", "pm_visa")

        attach.assert_called_once_with("pm_visa", customer="cus_ada", api_key="sk_test_123")
        assert modify.call_args.kwargs["invoice_settings"] == {"default_payment_method": "pm_visa"}

    @pytest.mark.asyncio
    async def test_create_customer_and_setup_intent(self, stripe_gateway):
        with (
            patch.object(stripe.Customer, "create", MagicMock(return_value=SimpleNamespace(id="cus_1"))),
            patch.object(
                stripe.SetupIntent,
                "create",
                MagicMock(return_value=SimpleNamespace(client_secret="seti_secret")),
            ) as setup_create,
        ):
            assert await stripe_gateway.create_customer("ada@example.com") == "cus_1"
            assert await stripe_gateway.create_setup_intent("cus_1") == "seti_secret"

        assert setup_create.call_args.kwargs["usage"] == "off_session"


class TestFromConfig:
    def test_requires_stripe_settings(self):
        with pytest.raises(BillingConfigurationError):
            StripePaymentGateway.from_config(BillingConfig())

    def test_builds_from_config(self):
        gateway = StripePaymentGateway.from_config(
            BillingConfig(stripe=StripeConfig(api_key="sk_live", max_network_retries=2))
        )

        assert gateway.api_key == "sk_live"
        assert gateway.max_attempts == 3
        assert gateway.currency == "aud"
