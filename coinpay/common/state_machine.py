"""Order status and delivery status transitions enforced by the order store."""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Currency(str, Enum):
    INR = "INR"
    USD = "USD"


ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED},
    OrderStatus.PAID: {OrderStatus.REFUNDED},
    OrderStatus.FAILED: set(),
    OrderStatus.REFUNDED: set(),
}

# Delivery only moves while the order is paid; a failed delivery may be retried.
DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.PROCESSING},
    DeliveryStatus.PROCESSING: {DeliveryStatus.COMPLETED, DeliveryStatus.FAILED},
    DeliveryStatus.COMPLETED: set(),
    DeliveryStatus.FAILED: {DeliveryStatus.PROCESSING},
}


def validate_transition(current: OrderStatus, new: OrderStatus) -> None:
    """Raise when an order status transition is not allowed."""

    if OrderStatus(new) not in ALLOWED_TRANSITIONS.get(OrderStatus(current), set()):
        raise ValueError(f"Invalid transition: {OrderStatus(current).value} -> {OrderStatus(new).value}")


def validate_delivery_transition(current: DeliveryStatus, new: DeliveryStatus) -> None:
    """Raise when a delivery status transition is not allowed."""

    if DeliveryStatus(new) not in DELIVERY_TRANSITIONS.get(DeliveryStatus(current), set()):
        raise ValueError(
            f"Invalid delivery transition: {DeliveryStatus(current).value} -> {DeliveryStatus(new).value}"
        )
