"""
Billing system exceptions.

Custom exceptions for renewal billing with clear error messages.
Each error carries a machine-readable code, a status code, context and a
recovery hint so callers can surface it consistently.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found error."""

    def __init__(
        self, message: str, subscription_id: str | None = None, customer_id: str | None = None
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if customer_id:
            context["customer_id"] = customer_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class SubscriptionStateError(SubscriptionError):
    """Invalid subscription state transition error."""

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
            recovery_hint=f"Cannot transition from {current_state} to {requested_state}. Check subscription status first.",
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"


class ConcurrentModificationError(SubscriptionError):
    """The stored subscription changed since it was loaded."""

    def __init__(
        self, message: str, subscription_id: str, expected_version: int | None = None
    ) -> None:
        context: dict[str, Any] = {"subscription_id": subscription_id}
        if expected_version is not None:
            context["expected_version"] = expected_version

        super().__init__(
            message,
            context=context,
            recovery_hint="Reload the subscription and re-evaluate the change",
        )
        self.error_code = "CONFLICT"
        self.status_code = 409


class PaymentError(BillingError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class GatewayError(PaymentError):
    """Off-session charge or gateway call failed.

    ``code`` is the processor's decline or error code; ``transient`` marks
    failures such as rate limiting or a temporarily unavailable processor.
    """

    def __init__(
        self,
        message: str,
        code: str = "unknown_error",
        transient: bool = False,
        decline_code: str | None = None,
    ) -> None:
        context: dict[str, Any] = {"gateway_code": code, "transient": transient}
        if decline_code:
            context["decline_code"] = decline_code

        super().__init__(
            message,
            context=context,
            recovery_hint=(
                "The processor is temporarily unavailable; the charge will be retried"
                if transient
                else "Ask the customer to update their payment method"
            ),
        )
        self.error_code = "GATEWAY_ERROR"
        self.code = code
        self.transient = transient
        self.decline_code = decline_code


class PaymentMethodMissingError(PaymentError):
    """Subscription has no saved gateway customer or payment instrument."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Ask the customer to add a payment method for future renewals",
        )
        self.error_code = "PAYMENT_METHOD_MISSING"


class InventoryUnavailableError(BillingError):
    """The catalog/inventory service could not be reached."""

    def __init__(self, message: str, product_id: str | None = None) -> None:
        context = {}
        if product_id:
            context["product_id"] = product_id

        super().__init__(
            message,
            "INVENTORY_UNAVAILABLE",
            status_code=503,
            context=context,
            recovery_hint="The renewal will be attempted again on the next scheduler run",
        )


class DuplicateLedgerEntryError(BillingError):
    """A ledger entry for this attempt or gateway transaction already exists."""

    def __init__(self, message: str, attempt_key: str | None = None) -> None:
        context = {}
        if attempt_key:
            context["attempt_key"] = attempt_key

        super().__init__(
            message,
            "DUPLICATE_LEDGER_ENTRY",
            status_code=409,
            context=context,
            recovery_hint="Read the recorded entry instead of recording the attempt again",
        )
        self.attempt_key = attempt_key


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )
