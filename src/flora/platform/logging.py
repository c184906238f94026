"""
Simple structured logging setup using structlog directly.

No wrappers, just standard structlog configuration.
"""

import logging

import structlog

from flora.platform.settings import settings


def setup_logging() -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    logging.basicConfig(format="%(message)s", level=settings.observability.log_level.value)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Concurrent renewals are easier to follow with the worker thread attached
    if settings.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_audit_logger() -> structlog.BoundLogger:
    """
    Get a logger specifically for audit events.

    Audit events are just structured logs with specific metadata.
    """
    return structlog.get_logger("audit")


def log_audit_event(
    action: str,
    category: str,
    user_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **kwargs,
) -> None:
    """
    Log an audit event as a structured log entry.

    Used for user-initiated subscription changes; billing attempts are
    audited through the billing ledger instead.
    """
    audit_logger = get_audit_logger()

    audit_logger.info(
        action,
        audit_category=category,
        audit_user_id=user_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        **kwargs,
    )
