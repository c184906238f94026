"""
SQLAlchemy tables for the billing ledger and renewal orders.

Ledger rows reference subscriptions by id only. There is no foreign key, so
nothing done to a subscription can cascade into its billing history.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flora.platform.db import Base, UTCDateTime


class BillingEventTable(Base):
    """Append-only record of billing attempts and their outcomes."""

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)

    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skipped_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    gateway_transaction_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # One success or failure entry per charge attempt
    attempt_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    cycle_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_billing_events_subscription", "subscription_id", "created_at", "sequence"),
        Index("ix_billing_events_kind", "kind"),
    )


class RenewalOrderTable(Base):
    """Snapshot of a successfully charged renewal."""

    __tablename__ = "renewal_orders"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_event_id: Mapped[str] = mapped_column(String(50), nullable=False)

    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gateway_transaction_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    items: Mapped[list["RenewalOrderItemTable"]] = relationship(
        back_populates="order",
        order_by="RenewalOrderItemTable.position",
        lazy="selectin",
    )

    __table_args__ = (Index("ix_renewal_orders_subscription", "subscription_id", "created_at"),)


class RenewalOrderItemTable(Base):
    """Line of a renewal order."""

    __tablename__ = "renewal_order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("renewal_orders.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[RenewalOrderTable] = relationship(back_populates="items")
