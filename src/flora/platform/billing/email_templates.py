"""
Email templates for subscription renewal events.

All templates have an HTML and a plain text version and are rendered with
``str.format`` against a context built from the notification payload.
"""

from datetime import datetime
from typing import Any

from flora.platform.billing.money_utils import format_cents

# Email template registry
EMAIL_TEMPLATES = {
    "renewal_succeeded": {
        "subject": "Your Flora subscription delivery is confirmed",
        "html": """
            <h1>Subscription Delivery Confirmed</h1>
            <p>Your {cadence} subscription has been renewed.</p>

            <h2>Order Details</h2>
            <p><strong>Order Number:</strong> {order_number}</p>
            <p><strong>Amount charged:</strong> {amount_formatted}</p>

            {skipped_section_html}

            <p><strong>Next delivery:</strong> {next_renewal_date}</p>

            <p>
                <a href="{manage_url}" style="background: #3b82f6; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px; display: inline-block;">Manage Subscription</a>
            </p>
        """,
        "text": """
Subscription Delivery Confirmed

Your {cadence} subscription has been renewed.

Order Number: {order_number}
Amount charged: {amount_formatted}
{skipped_section_text}
Next delivery: {next_renewal_date}

Manage Subscription: {manage_url}
        """,
    },
    "renewal_postponed": {
        "subject": "Your Flora subscription delivery postponed",
        "html": """
            <h1>Delivery Postponed</h1>
            <p>All items in your subscription are currently unavailable:</p>

            <ul>
                {skipped_items_html}
            </ul>

            <p>We've rescheduled your delivery to the next cycle: <strong>{next_renewal_date}</strong></p>

            <p>You were not charged for this delivery.</p>

            <p>
                <a href="{manage_url}" style="background: #3b82f6; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px; display: inline-block;">Manage Subscription</a>
            </p>
        """,
        "text": """
Delivery Postponed

All items in your subscription are currently unavailable:
{skipped_items_text}

We've rescheduled your delivery to the next cycle: {next_renewal_date}

You were not charged for this delivery.

Manage Subscription: {manage_url}
        """,
    },
    "renewal_payment_failed": {
        "subject": "{subject_prefix}Payment issue with your Flora subscription",
        "html": """
            <h1>Payment Issue</h1>
            <p>We couldn't process your subscription payment of {amount_formatted}.</p>

            <p><strong>We'll automatically retry on {retry_date}.</strong></p>

            <p>If you'd like to update your payment method, please visit:</p>
            <a href="{manage_url}">Manage Subscription</a>

            <p>Error: {error_message}</p>
            <p>Attempt: {attempt} of {max_attempts}</p>
        """,
        "text": """
Payment Issue

We couldn't process your subscription payment of {amount_formatted}.

We'll automatically retry on {retry_date}.

Update your payment method: {manage_url}

Error: {error_message}
Attempt: {attempt} of {max_attempts}
        """,
    },
    "subscription_expired": {
        "subject": "Your Flora subscription has been cancelled",
        "html": """
            <h1>Subscription Cancelled</h1>
            <p>After {max_attempts} failed payment attempts, your subscription has been cancelled.</p>

            <p>You can create a new subscription anytime:</p>
            <a href="{products_url}">Browse Products</a>

            <p>We'd love to have you back!</p>

            <p>Last error: {error_message}</p>
        """,
        "text": """
Subscription Cancelled

After {max_attempts} failed payment attempts, your subscription has been cancelled.

You can create a new subscription anytime: {products_url}

Last error: {error_message}
        """,
    },
    "payment_method_required": {
        "subject": "Add a payment method to continue your Flora subscription",
        "html": """
            <h1>Payment Method Needed</h1>
            <p>Your next delivery is ready, but there is no saved payment method on your subscription.</p>

            <p>Add a card and we'll process your renewal straight away.</p>

            <p>
                <a href="{manage_url}" style="background: #dc2626; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px; display: inline-block;">Add Payment Method</a>
            </p>
        """,
        "text": """
Payment Method Needed

Your next delivery is ready, but there is no saved payment method on your subscription.

Add a card and we'll process your renewal straight away: {manage_url}
        """,
    },
}


def render_template(template_name: str, context: dict[str, Any]) -> tuple[str, str, str]:
    """
    Render email template with context data.

    Args:
        template_name: Name of the template to render
        context: Dictionary of variables to interpolate

    Returns:
        Tuple of (subject, html_body, text_body)
    """
    if template_name not in EMAIL_TEMPLATES:
        raise ValueError(f"Unknown email template: {template_name}")

    template = EMAIL_TEMPLATES[template_name]

    subject = template["subject"].format(**context)
    html = template["html"].format(**context)
    text = template["text"].format(**context)

    return subject, html, text


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y")
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value).strftime("%B %d, %Y")
    return "TBD"


def _skipped_lines(payload: dict[str, Any]) -> list[str]:
    return [
        f"{item['product_id']} - {item['reason']}" for item in payload.get("skipped_items", [])
    ]


def build_renewal_context(payload: dict[str, Any], frontend_url: str) -> dict[str, Any]:
    """Build the context shared by all renewal templates from a notification payload."""
    skipped = _skipped_lines(payload)
    skipped_html = "".join(f"<li>{line}</li>" for line in skipped)
    attempt = payload.get("attempt", 0)

    return {
        "cadence": payload.get("cadence", ""),
        "order_number": payload.get("order_number", ""),
        "amount_formatted": (
            format_cents(payload["amount_cents"], payload.get("currency"))
            if payload.get("amount_cents") is not None
            else "-"
        ),
        "next_renewal_date": _format_date(payload.get("next_renewal_at")),
        "retry_date": _format_date(payload.get("next_retry_at")),
        "error_message": payload.get("error_message") or "Payment declined",
        "attempt": attempt,
        "max_attempts": payload.get("max_attempts", 3),
        "subject_prefix": "Second attempt: " if attempt == 2 else "",
        "skipped_items_html": skipped_html,
        "skipped_items_text": "\n".join(f"- {line}" for line in skipped),
        "skipped_section_html": (
            f"<h3>Note: Some items were unavailable</h3><ul>{skipped_html}</ul>" if skipped else ""
        ),
        "skipped_section_text": (
            "\nSome items were unavailable:\n" + "\n".join(f"- {line}" for line in skipped) + "\n"
            if skipped
            else ""
        ),
        "manage_url": f"{frontend_url}/subscriptions",
        "products_url": f"{frontend_url}/products",
    }
