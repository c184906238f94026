"""
SQLAlchemy tables for subscriptions and their line items.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flora.platform.billing.subscriptions.models import LAST_ERROR_MAX_LENGTH
from flora.platform.db import Base, TimestampMixin, UTCDateTime


class SubscriptionTable(Base, TimestampMixin):
    """Customer subscription with billing schedule and failure tracking."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cadence: Mapped[str] = mapped_column(String(20), nullable=False)
    spontaneous_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Gateway references, nullable until a payment method is attached
    gateway_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    awaiting_payment_method: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    next_renewal_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_billing_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_billing_error: Mapped[str | None] = mapped_column(
        String(LAST_ERROR_MAX_LENGTH), nullable=True
    )

    failed_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Concurrency control
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    pending_action: Mapped[str | None] = mapped_column(String(20), nullable=True)

    items: Mapped[list["SubscriptionItemTable"]] = relationship(
        back_populates="subscription",
        order_by="SubscriptionItemTable.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_subscriptions_customer", "customer_id"),
        Index("ix_subscriptions_status_renewal", "status", "next_renewal_at"),
        Index("ix_subscriptions_status_retry", "status", "next_retry_at"),
    )


class SubscriptionItemTable(Base):
    """Subscribed product and quantity, in basket order."""

    __tablename__ = "subscription_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("subscriptions.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    subscription: Mapped[SubscriptionTable] = relationship(back_populates="items")

    __table_args__ = (Index("ix_subscription_items_subscription", "subscription_id", "position"),)
