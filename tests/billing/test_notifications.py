"""Tests for renewal notifications and email templates."""

import json

import httpx
import pytest

from flora.platform.billing.email_templates import build_renewal_context, render_template
from flora.platform.billing.money_utils import format_cents
from flora.platform.billing.notifications import (
    EmailNotificationSink,
    HttpEmailSender,
    LoggingNotificationSink,
    NotificationEvent,
    NotificationKind,
    deliver_notification,
)
from tests.billing.fakes import RecordingNotificationSink

pytestmark = pytest.mark.unit


class RecordingSender:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, html, text):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


def _event(kind=NotificationKind.RENEWAL_SUCCEEDED, **payload):
    body = {
        "customer_email": "ada@example.com",
        "cadence": "monthly",
        "currency": "AUD",
        "amount_cents": 4000,
        "order_number": "SUB-20240115-ABCDEF12",
        "next_renewal_at": "2024-02-15T09:00:00+00:00",
    }
    body.update(payload)
    return NotificationEvent(
        kind=kind, subscription_id="sub_1", customer_id="cust_001", payload=body
    )


class TestTemplates:
    def test_format_cents(self):
        assert format_cents(4000, "AUD") == "$40.00"

    def test_success_email(self):
        context = build_renewal_context(_event().payload, "https://flora.test")
        subject, html, text = render_template("renewal_succeeded", context)

        assert "confirmed" in subject
        assert "SUB-20240115-ABCDEF12" in html
        assert "$40.00" in text
        assert "February 15, 2024" in text
        assert "https://flora.test/subscriptions" in text

    def test_success_email_lists_skipped_items(self):
        payload = _event(
            skipped_items=[
                {"product_id": "tulip-bunch", "quantity": 1, "reason": "discontinued"}
            ]
        ).payload
        _, html, text = render_template(
            "renewal_succeeded", build_renewal_context(payload, "https://flora.test")
        )

        assert "<li>tulip-bunch - discontinued</li>" in html
        assert "- tulip-bunch - discontinued" in text

    def test_second_attempt_subject(self):
        payload = _event(attempt=2, next_retry_at="2024-01-18T09:00:00+00:00").payload
        subject, _, text = render_template(
            "renewal_payment_failed", build_renewal_context(payload, "https://flora.test")
        )

        assert subject.startswith("Second attempt: ")
        assert "Attempt: 2 of 3" in text
        assert "January 18, 2024" in text

    def test_unknown_template(self):
        with pytest.raises(ValueError):
            render_template("nope", {})

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_every_kind_has_a_template(self, kind):
        context = build_renewal_context(_event(kind).payload, "https://flora.test")
        subject, html, text = render_template(kind.value, context)
        assert subject and html and text


class TestSinks:
    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self):
        assert not await deliver_notification(RecordingNotificationSink(fail=True), _event())

    @pytest.mark.asyncio
    async def test_delivery_success(self):
        sink = RecordingNotificationSink()
        assert await deliver_notification(sink, _event())
        assert sink.kinds() == [NotificationKind.RENEWAL_SUCCEEDED]

    @pytest.mark.asyncio
    async def test_logging_sink(self):
        await LoggingNotificationSink().notify(_event())

    @pytest.mark.asyncio
    async def test_email_sink_renders_and_sends(self):
        sender = RecordingSender()
        await EmailNotificationSink(sender, "https://flora.test/").notify(_event())

        assert sender.sent[0]["to"] == "ada@example.com"
        assert "SUB-20240115-ABCDEF12" in sender.sent[0]["text"]

    @pytest.mark.asyncio
    async def test_email_sink_skips_without_recipient(self):
        sender = RecordingSender()
        await EmailNotificationSink(sender, "https://flora.test").notify(
            _event(customer_email=None)
        )
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_http_sender_posts_json(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sender = HttpEmailSender("https://mail.test/send", api_key="key", client=client)
        await sender.send("ada@example.com", "Hi", "<p>Hi</p>", "Hi")
        await client.aclose()

        assert requests[0].headers["Authorization"] == "Bearer key"
        assert json.loads(requests[0].content)["to"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_http_sender_raises_on_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        sender = HttpEmailSender("https://mail.test/send", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await sender.send("ada@example.com", "Hi", "<p>Hi</p>", "Hi")
