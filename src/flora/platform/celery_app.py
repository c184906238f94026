"""
Celery application configuration.

The beat schedule triggers a renewal pass every
``BILLING__RENEWAL_INTERVAL_HOURS`` hours.
"""

from typing import Any

import structlog
from celery import Celery
from celery.signals import worker_process_init
from kombu import Queue

from flora.platform.logging import setup_logging
from flora.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "flora_renewals",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["flora.platform.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@worker_process_init.connect  # type: ignore[misc]
def configure_worker_logging(**kwargs: Any) -> None:
    """Configure structlog in each worker process."""
    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the periodic renewal pass."""
    logger = structlog.get_logger(__name__)

    if not settings.billing.auto_process_renewals:
        logger.info("celery.renewals.disabled")
        return

    from flora.platform.tasks import process_renewals_task

    interval = max(60.0, settings.billing.renewal_interval_hours * 3600.0)
    sender.add_periodic_task(
        interval,
        process_renewals_task.s(),
        name="billing-process-renewals",
    )
    logger.info("celery.renewals.scheduled", interval_seconds=interval)


__all__ = ["celery_app"]
