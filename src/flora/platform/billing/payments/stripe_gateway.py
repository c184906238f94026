"""
Stripe payment gateway.

The stripe SDK is synchronous, so every call runs in a worker thread.
Transport failures are retried with tenacity; each retry carries the same
idempotency key, so Stripe returns the original result instead of charging
twice.
"""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from flora.platform.billing.config import BillingConfig
from flora.platform.billing.exceptions import GatewayError
from flora.platform.billing.payments.gateway import ChargeResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# PaymentIntent statuses that mean the money is captured or will be
SETTLED_STATUSES = frozenset({"succeeded", "processing"})


def map_stripe_error(error: stripe.StripeError) -> GatewayError:
    """Translate a stripe SDK exception into a ``GatewayError``."""
    message = error.user_message or str(error) or "Payment failed"

    if isinstance(error, stripe.CardError):
        decline_code = getattr(error.error, "decline_code", None) if error.error else None
        return GatewayError(
            message,
            code=error.code or "card_declined",
            transient=False,
            decline_code=decline_code,
        )
    if isinstance(error, stripe.RateLimitError):
        return GatewayError(message, code="rate_limited", transient=True)
    if isinstance(error, stripe.APIConnectionError):
        return GatewayError(message, code="api_connection_error", transient=True)
    if isinstance(error, stripe.APIError):
        return GatewayError(message, code=error.code or "processor_unavailable", transient=True)
    if isinstance(error, stripe.AuthenticationError):
        return GatewayError(message, code="authentication_error", transient=False)
    if isinstance(error, stripe.InvalidRequestError):
        return GatewayError(message, code=error.code or "invalid_request", transient=False)
    return GatewayError(message, code=error.code or "unknown_error", transient=False)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.transient


class StripePaymentGateway:
    """``PaymentGateway`` backed by Stripe PaymentIntents."""

    def __init__(
        self,
        api_key: str,
        currency: str = "AUD",
        max_network_retries: int = 3,
        retry_wait_seconds: float = 1.0,
    ) -> None:
        self.api_key = api_key
        self.currency = currency.lower()
        self.max_attempts = max_network_retries + 1
        self.retry_wait_seconds = retry_wait_seconds

    @classmethod
    def from_config(cls, config: BillingConfig) -> "StripePaymentGateway":
        stripe_config = config.require_stripe()
        return cls(
            api_key=stripe_config.api_key,
            currency=config.currency.default_currency,
            max_network_retries=stripe_config.max_network_retries,
        )

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a stripe SDK call off the event loop, retrying transient failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, min=0, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
                except stripe.StripeError as e:
                    mapped = map_stripe_error(e)
                    logger.warning(
                        "stripe.call.failed",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                        code=mapped.code,
                        transient=mapped.transient,
                    )
                    raise mapped from e
        raise AssertionError("unreachable")  # pragma: no cover

    async def charge_off_session(
        self,
        customer_ref: str,
        payment_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        intent = await self._call(
            "charge_off_session",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self.currency,
            customer=customer_ref,
            payment_method=payment_ref,
            off_session=True,
            confirm=True,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

        if intent.status not in SETTLED_STATUSES:
            raise GatewayError(
                f"Payment was not completed (status {intent.status})",
                code=intent.status,
                transient=False,
            )

        logger.info(
            "stripe.charge.succeeded",
            transaction_ref=intent.id,
            amount_cents=amount_cents,
            status=intent.status,
        )
        return ChargeResult(transaction_ref=intent.id, status=intent.status, amount_cents=amount_cents)

    async def create_customer(
        self, email: str, name: str | None = None, metadata: dict[str, Any] | None = None
    ) -> str:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
        )
        return customer.id

    async def attach_payment_method(self, customer_ref: str, payment_ref: str) -> None:
        await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_ref,
            customer=customer_ref,
        )
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_ref,
            invoice_settings={"default_payment_method": payment_ref},
        )

    async def create_setup_intent(self, customer_ref: str) -> str:
        """Start saving a card for future off-session use; returns the client secret."""
        intent = await self._call(
            "create_setup_intent",
            stripe.SetupIntent.create,
            customer=customer_ref,
            usage="off_session",
            payment_method_types=["card"],
        )
        return intent.client_secret
