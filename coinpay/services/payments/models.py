"""Payments database models.

This DB is the source of truth for order state, the transition timeline, and
the service-local outbox consumed by the fulfillment worker.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from coinpay.common.db import Base
from coinpay.common.state_machine import Currency, DeliveryStatus, OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    # Stored as plain strings ("pending", "INR") so migrations stay portable.
    return Enum(
        enum_cls,
        native_enum=False,
        length=16,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class Order(Base):
    """One purchase of a coin pack, from creation until it is paid."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    confirmation_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)

    # Snapshot of the catalog entry at purchase time; never recomputed.
    product_id: Mapped[str] = mapped_column(String, index=True)
    product_name: Mapped[str] = mapped_column(String)
    product_coins: Mapped[int] = mapped_column(Integer)
    product_price_inr: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    product_price_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    customer_email: Mapped[str] = mapped_column(String, index=True)
    game_uid: Mapped[str] = mapped_column(String)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[Currency] = mapped_column(_enum(Currency))
    status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), index=True, default=OrderStatus.PENDING)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        _enum(DeliveryStatus), index=True, default=DeliveryStatus.PENDING
    )
    webhook_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OrderTimeline(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "order_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Events waiting to be published to Kafka for the fulfillment worker."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Product(Base):
    """Read-only view of the catalog table owned by the storefront."""

    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    coins: Mapped[int] = mapped_column(Integer)
    price_inr: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    price_usd: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
