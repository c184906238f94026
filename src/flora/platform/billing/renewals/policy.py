"""
Retry/failure policy for off-session renewal charges.

The policy is a pure decision function: given how many attempts have already
failed and how the latest one failed, it returns the next status, the new
failure count and when to try again. Every charge failure consumes exactly
one attempt, whether the gateway declined or was briefly unavailable.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from flora.platform.billing.config import RetryPolicyConfig
from flora.platform.billing.exceptions import GatewayError, PaymentMethodMissingError
from flora.platform.billing.subscriptions.models import SubscriptionStatus

DEFAULT_RETRY_INTERVAL = timedelta(days=3)
DEFAULT_MAX_FAILED_ATTEMPTS = 3


class ErrorClass(str, Enum):
    """How a failed charge attempt is classified."""

    TRANSIENT = "transient"
    DECLINED = "declined"
    PAYMENT_METHOD_MISSING = "payment_method_missing"


def classify_error(error: Exception) -> ErrorClass:
    if isinstance(error, PaymentMethodMissingError):
        return ErrorClass.PAYMENT_METHOD_MISSING
    if isinstance(error, GatewayError) and error.transient:
        return ErrorClass.TRANSIENT
    return ErrorClass.DECLINED


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of the policy for one failed attempt."""

    next_status: SubscriptionStatus
    failed_attempt_count: int
    next_retry_at: datetime | None

    @property
    def expired(self) -> bool:
        return self.next_status == SubscriptionStatus.EXPIRED


class RetryPolicy:
    """Bounded, uniform retry policy.

    ``terminal_decline_codes`` is an opt-in extension: a decline carrying one
    of these codes expires the subscription without using the remaining
    attempts. It is empty unless configured.
    """

    def __init__(
        self,
        retry_interval: timedelta = DEFAULT_RETRY_INTERVAL,
        max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
        terminal_decline_codes: Iterable[str] = (),
    ) -> None:
        if max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        if retry_interval <= timedelta(0):
            raise ValueError("retry_interval must be positive")
        self.retry_interval = retry_interval
        self.max_failed_attempts = max_failed_attempts
        self.terminal_decline_codes = frozenset(terminal_decline_codes)

    @classmethod
    def from_config(cls, config: RetryPolicyConfig) -> "RetryPolicy":
        return cls(
            retry_interval=timedelta(days=config.retry_interval_days),
            max_failed_attempts=config.max_failed_attempts,
            terminal_decline_codes=config.terminal_decline_codes,
        )

    def decide(
        self,
        failed_attempt_count: int,
        error_class: ErrorClass,
        now: datetime,
        decline_code: str | None = None,
    ) -> RetryDecision:
        """Decide the transition after a failed charge.

        Args:
            failed_attempt_count: failures recorded before this attempt
            error_class: classification of this attempt's failure
            now: time of the failed attempt
            decline_code: processor decline code, if any

        Raises:
            ValueError: for PAYMENT_METHOD_MISSING, which never consumes an
                attempt, or for an already exhausted count
        """
        if error_class == ErrorClass.PAYMENT_METHOD_MISSING:
            raise ValueError("missing payment methods do not consume retry attempts")
        if not 0 <= failed_attempt_count < self.max_failed_attempts:
            raise ValueError(
                f"failed_attempt_count must be in [0, {self.max_failed_attempts}), "
                f"got {failed_attempt_count}"
            )

        count = failed_attempt_count + 1
        if (
            error_class == ErrorClass.DECLINED
            and decline_code is not None
            and decline_code in self.terminal_decline_codes
        ):
            count = self.max_failed_attempts

        if count >= self.max_failed_attempts:
            return RetryDecision(
                next_status=SubscriptionStatus.EXPIRED,
                failed_attempt_count=self.max_failed_attempts,
                next_retry_at=None,
            )
        return RetryDecision(
            next_status=SubscriptionStatus.PAYMENT_FAILED,
            failed_attempt_count=count,
            next_retry_at=now + self.retry_interval,
        )
