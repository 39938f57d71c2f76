"""Durable order storage with precondition-checked writes.

Status never changes through a read-modify-write of a loaded ORM object. Every
status writer goes through `compare_and_update`, a single conditional UPDATE
guarded by the expected current status, so when two triggers race only one
write can match its precondition.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from coinpay.common.errors import (
    ConflictError,
    DuplicateOrderError,
    GatewayOrderAlreadyAttachedError,
    OrderNotFoundError,
)
from coinpay.common.events import EventEnvelope
from coinpay.common.logging import logger, trace_id_ctx
from coinpay.common.state_machine import (
    DeliveryStatus,
    OrderStatus,
    validate_delivery_transition,
    validate_transition,
)
from coinpay.services.payments.models import Order, OrderTimeline, OutboxEvent, utcnow

# Fields a status transition may write. Everything else is fixed at creation.
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "delivery_status",
        "gateway_payment_id",
        "confirmation_signature",
        "payment_method",
        "webhook_confirmed",
    }
)


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class OrderStore:
    """SQLAlchemy-backed order repository."""

    def __init__(self, session_factory, fulfillment_topic: str = "orders.paid") -> None:
        self.session_factory = session_factory
        self.fulfillment_topic = fulfillment_topic

    def create(self, order: Order) -> str:
        """Insert a new order. A reused `order_id` raises `DuplicateOrderError`."""

        with self.session_factory() as db:
            if db.get(Order, order.order_id) is not None:
                raise DuplicateOrderError()
            db.add(order)
            db.add(
                OrderTimeline(
                    order_id=order.order_id,
                    from_state=None,
                    to_state=OrderStatus.PENDING.value,
                    reason="order_created",
                    event_id=None,
                )
            )
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateOrderError() from exc
            return order.order_id

    def find_by_order_id(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError()
            return order

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.execute(
                select(Order).where(Order.gateway_order_id == gateway_order_id)
            ).scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError()
            return order

    def _exists(self, db, order_id: str) -> bool:
        return db.execute(select(Order.order_id).where(Order.order_id == order_id)).first() is not None

    def attach_gateway_order_id(self, order_id: str, gateway_order_id: str) -> None:
        """Set the gateway order id once, only while the order is still pending."""

        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(Order)
                    .where(
                        Order.order_id == order_id,
                        Order.gateway_order_id.is_(None),
                        Order.status == OrderStatus.PENDING,
                    )
                    .values(
                        gateway_order_id=gateway_order_id,
                        state_version=Order.state_version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as exc:
                # Another order already owns this gateway id.
                db.rollback()
                raise ConflictError("Gateway order id belongs to another order") from exc
            if result.rowcount != 1:
                db.rollback()
                if not self._exists(db, order_id):
                    raise OrderNotFoundError()
                raise GatewayOrderAlreadyAttachedError()
            db.commit()

    def compare_and_update(
        self,
        order_id: str,
        expected_status: OrderStatus,
        mutation: dict,
        reason: str,
        event_id: str | None = None,
    ) -> UpdateOutcome:
        """Apply `mutation` only if the stored status still equals `expected_status`.

        The status change, its timeline row and (for `paid`) the fulfillment
        outbox event commit together or not at all.
        """

        unknown = set(mutation) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"immutable order fields in mutation: {sorted(unknown)}")
        new_status = mutation.get("status")
        if new_status is None:
            raise ValueError("compare_and_update requires a target status")
        validate_transition(expected_status, new_status)

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == OrderStatus(expected_status))
                .values(
                    **mutation,
                    state_version=Order.state_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                if not self._exists(db, order_id):
                    return UpdateOutcome.NOT_FOUND
                logger.info(
                    "order_update_conflict order_id=%s expected_status=%s",
                    order_id,
                    OrderStatus(expected_status).value,
                )
                return UpdateOutcome.CONFLICT

            db.add(
                OrderTimeline(
                    order_id=order_id,
                    from_state=OrderStatus(expected_status).value,
                    to_state=OrderStatus(new_status).value,
                    reason=reason,
                    event_id=event_id,
                )
            )
            if OrderStatus(new_status) == OrderStatus.PAID:
                self._enqueue_paid_event(db, order_id)
            db.commit()
            return UpdateOutcome.UPDATED

    def _enqueue_paid_event(self, db, order_id: str) -> None:
        order = db.get(Order, order_id)
        trace_id = trace_id_ctx.get() or str(uuid4())
        envelope = EventEnvelope(
            event_type="orders.paid",
            aggregate_id=order_id,
            trace_id=trace_id,
            payload={
                "order_id": order.order_id,
                "gateway_order_id": order.gateway_order_id,
                "gateway_payment_id": order.gateway_payment_id,
                "game_uid": order.game_uid,
                "customer_email": order.customer_email,
                "product_name": order.product_name,
                "coins": order.product_coins,
            },
        )
        db.add(
            OutboxEvent(
                aggregate_type="order",
                aggregate_id=order_id,
                event_type="orders.paid",
                topic=self.fulfillment_topic,
                payload=envelope.model_dump(),
            )
        )

    def annotate_webhook_confirmed(self, order_id: str, payment_method: str | None = None) -> bool:
        """Record webhook corroboration on an already paid order.

        Status is untouched. Returns False when the flag was already set, so a
        redelivered webhook performs no write.
        """

        values = {"webhook_confirmed": True, "updated_at": utcnow()}
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError()
            if payment_method and not order.payment_method:
                values["payment_method"] = payment_method
            result = db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.status == OrderStatus.PAID,
                    Order.webhook_confirmed.is_(False),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def list_awaiting_fulfillment(self, limit: int = 100) -> list[Order]:
        """Paid orders whose delivery the fulfillment worker has yet to finish, oldest first."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order)
                    .where(
                        Order.status == OrderStatus.PAID,
                        Order.delivery_status == DeliveryStatus.PROCESSING,
                    )
                    .order_by(Order.updated_at)
                    .limit(limit)
                ).scalars()
            )

    def update_delivery_status(
        self, order_id: str, expected: DeliveryStatus, new: DeliveryStatus
    ) -> UpdateOutcome:
        """Advance delivery status of a paid order, guarded like `compare_and_update`."""

        validate_delivery_transition(expected, new)
        values = {
            "delivery_status": DeliveryStatus(new),
            "state_version": Order.state_version + 1,
            "updated_at": utcnow(),
        }
        if DeliveryStatus(new) == DeliveryStatus.COMPLETED:
            values["delivered_at"] = datetime.now(timezone.utc)
        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.status == OrderStatus.PAID,
                    Order.delivery_status == DeliveryStatus(expected),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                if not self._exists(db, order_id):
                    return UpdateOutcome.NOT_FOUND
                return UpdateOutcome.CONFLICT
            db.commit()
            return UpdateOutcome.UPDATED
