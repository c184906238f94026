"""
Payment gateway interface.
"""

from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict


class ChargeResult(BaseModel):
    """A captured off-session charge."""

    model_config = ConfigDict(frozen=True)

    transaction_ref: str
    status: str = "succeeded"
    amount_cents: int | None = None


class PaymentGateway(Protocol):
    """Off-session payments against a saved payment instrument.

    Implementations raise ``GatewayError`` for declines and processor
    failures, with ``transient=True`` for rate limiting and outages.
    """

    async def charge_off_session(
        self,
        customer_ref: str,
        payment_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult: ...

    async def create_customer(
        self, email: str, name: str | None = None, metadata: dict[str, Any] | None = None
    ) -> str: ...

    async def attach_payment_method(self, customer_ref: str, payment_ref: str) -> None: ...

    async def create_setup_intent(self, customer_ref: str) -> str: ...
