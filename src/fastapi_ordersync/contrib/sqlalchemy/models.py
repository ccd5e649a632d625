"""SQLAlchemy order/payment/idempotency models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(tz=UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class OrderModel(Base):
    """Order row reconciled from payment and carrier webhooks."""

    __tablename__ = "ordersync_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    square_order_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(String(32), default="PENDING")
    payment_status: Mapped[str] = mapped_column(String(32), default="PENDING")
    fulfillment_type: Mapped[str] = mapped_column(String(32), default="pickup")
    total: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    customer_name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(255), default="")
    phone: Mapped[str] = mapped_column(String(64), default="")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    shipping_rate_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    shipping_carrier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    label_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    label_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now
    )

    items: Mapped[list[OrderItemModel]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )
    payments: Mapped[list[PaymentModel]] = relationship(
        back_populates="order", lazy="raise"
    )


class OrderItemModel(Base):
    """Line item; only what parcel sizing needs."""

    __tablename__ = "ordersync_order_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        ForeignKey("ordersync_orders.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(255), default="")
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    weight_lb: Mapped[Decimal] = mapped_column(Numeric(8, 3), default=Decimal("1.0"))

    order: Mapped[OrderModel] = relationship(back_populates="items")


class PaymentModel(Base):
    """One provider payment. Many payments may belong to one order."""

    __tablename__ = "ordersync_payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    square_payment_id: Mapped[str] = mapped_column(String(128), unique=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("ordersync_orders.id"))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(32), default="PENDING")
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now
    )

    order: Mapped[OrderModel] = relationship(back_populates="payments")


class RefundModel(Base):
    __tablename__ = "ordersync_refunds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    square_refund_id: Mapped[str] = mapped_column(String(128), unique=True)
    payment_id: Mapped[str] = mapped_column(ForeignKey("ordersync_payments.id"))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(32), default="PENDING")
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class ProcessedEventModel(Base):
    """Idempotency record: one row per event applied to a resource."""

    __tablename__ = "ordersync_processed_events"
    __table_args__ = (
        UniqueConstraint(
            "resource_type",
            "resource_id",
            "event_id",
            name="uq_ordersync_processed_event",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    resource_type: Mapped[str] = mapped_column(String(32))
    resource_id: Mapped[str] = mapped_column(String(128))
    event_id: Mapped[str] = mapped_column(String(128))
    event_type: Mapped[str] = mapped_column(String(64), default="")
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )


class DeadLetterModel(Base):
    """Webhook that exhausted its retries."""

    __tablename__ = "ordersync_dead_letters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(64))
    event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON)
    error: Mapped[str] = mapped_column(Text, default="")
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now
    )
    replayed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
