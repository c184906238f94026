"""Tests for structured logging helpers."""

import pytest
from structlog.testing import capture_logs

from flora.platform.logging import log_audit_event, setup_logging

pytestmark = pytest.mark.unit


def test_setup_logging_is_idempotent():
    setup_logging()
    setup_logging()


def test_audit_event_is_structured():
    with capture_logs() as logs:
        log_audit_event(
            action="subscription.cancel",
            category="billing",
            user_id="user-1",
            resource_type="subscription",
            resource_id="sub_1",
            queued=True,
        )

    assert logs == [
        {
            "event": "subscription.cancel",
            "log_level": "info",
            "audit_category": "billing",
            "audit_user_id": "user-1",
            "audit_resource_type": "subscription",
            "audit_resource_id": "sub_1",
            "queued": True,
        }
    ]
