#!/usr/bin/env python
"""
CLI management commands for Flora subscription renewals.
"""

import asyncio
import json
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

import click

from flora.platform.billing.exceptions import BillingError
from flora.platform.billing.renewals.scheduler import RenewalScheduler
from flora.platform.billing.subscriptions.service import SubscriptionService
from flora.platform.billing.subscriptions.store import SubscriptionStore
from flora.platform.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    init_db: Callable[[], Any]
    scheduler_context: Callable[..., AbstractAsyncContextManager[RenewalScheduler]]
    service_context: Callable[..., AbstractAsyncContextManager[SubscriptionService]]
    store_factory: Callable[[], SubscriptionStore]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    from flora.platform.billing.factory import renewal_scheduler, subscription_service
    from flora.platform.db import create_all_tables_async

    return CLIDependencies(
        init_db=create_all_tables_async,
        scheduler_context=renewal_scheduler,
        service_context=subscription_service,
        store_factory=SubscriptionStore,
    )


@click.group()
def cli() -> None:
    """Flora subscription renewals CLI."""
    setup_logging()


@cli.command()
def init_db() -> None:
    """Create the subscription and ledger tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--batch-size", type=int, default=None, help="Max subscriptions to process")
def process_renewals(batch_size: int | None) -> None:
    """Run one renewal pass over all due subscriptions."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        async with deps.scheduler_context(batch_size=batch_size) as scheduler:
            summary = await scheduler.run_once()
        return summary.model_dump(mode="json")

    result = asyncio.run(_run())

    click.echo("\nRenewal run:")
    click.echo("-" * 40)
    for key in (
        "due",
        "succeeded",
        "failed",
        "expired",
        "skipped",
        "payment_method_missing",
        "deferred",
        "already_claimed",
        "conflicts",
        "errors",
    ):
        click.echo(f"{key:25} {result[key]}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def retry_stats(as_json: bool) -> None:
    """Show subscriptions in the failed-payment pipeline."""
    deps = _get_cli_dependencies()

    async def _stats() -> dict[str, int]:
        from flora.platform.db import dispose_engine

        try:
            stats = await deps.store_factory().retry_stats()
        finally:
            await dispose_engine()
        return stats.model_dump()

    stats = asyncio.run(_stats())
    if as_json:
        click.echo(json.dumps(stats))
        return

    click.echo("\nRetry statistics:")
    click.echo("-" * 40)
    click.echo(f"{'Payment failed':25} {stats['total_failed']}")
    click.echo(f"{'  attempt 1':25} {stats['attempt_1']}")
    click.echo(f"{'  attempt 2':25} {stats['attempt_2']}")
    click.echo(f"{'Pending retry':25} {stats['pending_retry']}")
    click.echo(f"{'Expired':25} {stats['expired']}")
    click.echo(f"{'Awaiting payment method':25} {stats['awaiting_payment_method']}")


@cli.command()
@click.argument("subscription_id")
@click.option("--customer-ref", required=True, help="Gateway customer reference")
@click.option("--payment-ref", required=True, help="Gateway payment method reference")
@click.option("--sync-gateway", is_flag=True, help="Also attach the method at the gateway")
def attach_payment_method(
    subscription_id: str, customer_ref: str, payment_ref: str, sync_gateway: bool
) -> None:
    """Attach a saved payment method to a subscription."""
    deps = _get_cli_dependencies()

    async def _attach() -> str:
        async with deps.service_context(with_gateway=sync_gateway) as service:
            subscription = await service.attach_payment_method(
                subscription_id, customer_ref, payment_ref, user_id="cli"
            )
        return subscription.status.value

    try:
        status = asyncio.run(_attach())
    except BillingError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e
    click.echo(f"Payment method attached to {subscription_id} (status: {status})")


if __name__ == "__main__":
    cli()
