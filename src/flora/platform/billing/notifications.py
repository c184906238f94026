"""
Customer notifications for renewal outcomes.

Notifications are best effort. They are sent after the outcome is recorded
in the ledger, and a delivery failure is logged without touching billing
state.
"""

from enum import Enum
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

from flora.platform.billing.email_templates import build_renewal_context, render_template

logger = structlog.get_logger(__name__)


class NotificationKind(str, Enum):
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_POSTPONED = "renewal_postponed"
    RENEWAL_PAYMENT_FAILED = "renewal_payment_failed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_METHOD_REQUIRED = "payment_method_required"


class NotificationEvent(BaseModel):
    kind: NotificationKind
    subscription_id: str
    customer_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationSink(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...


async def deliver_notification(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Send ``event`` through ``sink``; failures are logged and reported as False."""
    try:
        await sink.notify(event)
    except Exception as e:
        logger.error(
            "notification.delivery.failed",
            kind=event.kind.value,
            subscription_id=event.subscription_id,
            error=str(e),
            exc_info=True,
        )
        return False
    return True


class LoggingNotificationSink:
    """Writes notifications to the structured log."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notification.sent",
            kind=event.kind.value,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            payload=event.payload,
        )


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, html: str, text: str) -> None: ...


class HttpEmailSender:
    """Posts rendered emails to a transactional email HTTP API."""

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        from_address: str = "subscriptions@flora.example.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self._client = client

    async def send(self, to: str, subject: str, html: str, text: str) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {
            "from": self.from_address,
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
        }
        if self._client is not None:
            response = await self._client.post(self.endpoint, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(self.endpoint, json=body, headers=headers)
        response.raise_for_status()


class EmailNotificationSink:
    """Renders renewal emails and hands them to an ``EmailSender``."""

    def __init__(self, sender: EmailSender, frontend_url: str) -> None:
        self.sender = sender
        self.frontend_url = frontend_url.rstrip("/")

    async def notify(self, event: NotificationEvent) -> None:
        recipient = event.payload.get("customer_email")
        if not recipient:
            logger.warning(
                "notification.email.no_recipient",
                kind=event.kind.value,
                subscription_id=event.subscription_id,
            )
            return

        context = build_renewal_context(event.payload, self.frontend_url)
        subject, html, text = render_template(event.kind.value, context)
        await self.sender.send(recipient, subject, html, text)

        logger.info(
            "notification.email.sent",
            kind=event.kind.value,
            subscription_id=event.subscription_id,
        )


def build_notification_sink() -> NotificationSink:
    """Email sink when an email endpoint is configured, otherwise log only."""
    from flora.platform.settings import settings

    if settings.notifications.email_endpoint:
        sender = HttpEmailSender(
            endpoint=settings.notifications.email_endpoint,
            api_key=settings.notifications.email_api_key or None,
            from_address=settings.notifications.from_address,
        )
        return EmailNotificationSink(sender, settings.notifications.frontend_url)
    return LoggingNotificationSink()
