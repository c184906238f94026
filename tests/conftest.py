"""
Global pytest configuration and fixtures for Flora renewals tests.

Every test that touches the database gets its own file-backed SQLite
database, so concurrent sessions within a test share one schema.
"""

import os

# Keep tests away from any database or broker configured in the environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.pop("DATABASE__URL", None)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flora.platform.billing.config import set_billing_config
from flora.platform.db import create_all_tables_async


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Async SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'renewals.sqlite'}")
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture(autouse=True)
def reset_billing_config():
    """Never leak a billing config override between tests."""
    yield
    set_billing_config(None)
