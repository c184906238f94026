"""
Celery task definitions.
"""

import asyncio
from typing import Any

import structlog

from flora.platform.billing.factory import renewal_scheduler
from flora.platform.celery_app import celery_app

logger = structlog.get_logger(__name__)


async def _process_renewals(batch_size: int | None = None) -> dict[str, Any]:
    async with renewal_scheduler(batch_size=batch_size) as scheduler:
        summary = await scheduler.run_once()
    return summary.model_dump(mode="json")


@celery_app.task(name="billing.process_renewals")
def process_renewals_task(batch_size: int | None = None) -> dict[str, Any]:
    """Periodic task running one renewal pass over all due subscriptions."""
    result = asyncio.run(_process_renewals(batch_size))
    logger.info("task.process_renewals.completed", **result)
    return result


__all__ = ["process_renewals_task"]
