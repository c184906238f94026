"""
SQLAlchemy 2.0 Database Configuration

Async engine, session factory and declarative base shared by all tables.
"""

from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote_plus

from sqlalchemy import DateTime, TypeDecorator
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from flora.platform.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_async_database_url() -> str:
    """Get the async database URL from settings."""
    if settings.database.url:
        url = settings.database.url
    elif settings.is_development and not settings.database.password:
        # In development, use SQLite if PostgreSQL is not configured
        return "sqlite+aiosqlite:///./flora_dev.sqlite"
    else:
        username = quote_plus(settings.database.username)
        password = quote_plus(settings.database.password) if settings.database.password else ""
        url = (
            f"postgresql://{username}:{password}"
            f"@{settings.database.host}:{settings.database.port}/{settings.database.database}"
        )

    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


# ==========================================
# Column types
# ==========================================


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on the way back; naive values read from the database
    are therefore tagged as UTC, and aware values are normalised before
    being written.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted, pass an aware UTC datetime")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = get_async_database_url()
        if url.startswith("sqlite"):
            _async_engine = create_async_engine(url, echo=settings.database.echo)
        else:
            _async_engine = create_async_engine(
                url,
                echo=settings.database.echo,
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the process-wide async session factory."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _async_session_maker


async def dispose_engine() -> None:
    """Dispose the engine so the next event loop starts with a fresh pool."""
    global _async_engine, _async_session_maker
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_maker = None


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    # Import table modules so they register with Base.metadata
    from flora.platform.billing.ledger import entities as _ledger_entities  # noqa: F401
    from flora.platform.billing.subscriptions import entities as _subscription_entities  # noqa: F401

    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "get_async_database_url",
    "get_async_engine",
    "get_session_factory",
    "dispose_engine",
    "create_all_tables_async",
]
