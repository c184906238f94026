"""
Flora Platform - recurring-commerce billing services.

This package provides the subscription renewal engine for the Flora
marketplace:
- Subscription store and lifecycle state machine
- Off-session renewal billing with bounded retries
- Append-only billing ledger and renewal order snapshots
- Scheduler, Celery task and CLI entry points
"""

__version__ = "1.0.0"
__author__ = "Flora Team"
__email__ = "dev@flora.example.com"


def get_version() -> str:
    """Get platform version."""
    return __version__


__all__ = ["__version__", "get_version"]
