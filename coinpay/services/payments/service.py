"""Order creation, client confirmation and fulfillment hand-off.

Creation writes a pending order first and only then asks the gateway for a
remote order, so a gateway failure leaves a pending order without a gateway id
that can be resumed without creating a second local order.
"""

import secrets
from time import time

from coinpay.common.errors import (
    ConflictError,
    GatewayError,
    GatewayOrderAlreadyAttachedError,
    OrderNotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from coinpay.common.logging import logger, order_id_ctx
from coinpay.common.metrics import orders_created_total
from coinpay.common.state_machine import Currency, DeliveryStatus, OrderStatus
from coinpay.services.payments.amounts import parse_currency, to_minor_units
from coinpay.services.payments.catalog import ProductCatalog, ProductSnapshot
from coinpay.services.payments.gateway import GatewayClient
from coinpay.services.payments.models import Order
from coinpay.services.payments.reconciler import ConfirmOutcome, OrderReconciler, PaymentConfirmation
from coinpay.services.payments.schemas import CreateOrderRequest, VerifyPaymentRequest
from coinpay.services.payments.signatures import ConfirmationSource
from coinpay.services.payments.store import OrderStore, UpdateOutcome


def new_order_id() -> str:
    """`ORD_<epoch ms>_<8 hex>`, also used as the gateway receipt id."""

    return f"ORD_{int(time() * 1000)}_{secrets.token_hex(4)}"


class OrderService:
    """Owns the order lifecycle up to the hand-off to fulfillment."""

    def __init__(
        self,
        store: OrderStore,
        catalog: ProductCatalog,
        gateway: GatewayClient,
        reconciler: OrderReconciler,
        key_id: str = "",
        service_name: str = "payments",
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.gateway = gateway
        self.reconciler = reconciler
        self.key_id = key_id
        self.service_name = service_name

    def create_order(self, req: CreateOrderRequest) -> tuple[Order, ProductSnapshot]:
        """Create a pending order plus its remote gateway order."""

        currency = parse_currency(req.currency)
        product = self.catalog.find_by_id(req.product_id)
        amount = product.price_inr if currency == Currency.INR else product.price_usd
        amount_minor = to_minor_units(amount, currency)

        order = Order(
            order_id=new_order_id(),
            product_id=product.product_id,
            product_name=product.name,
            product_coins=product.coins,
            product_price_inr=product.price_inr,
            product_price_usd=product.price_usd,
            customer_email=req.customer_email.lower(),
            game_uid=req.game_uid,
            amount=amount,
            amount_minor=amount_minor,
            currency=currency,
            status=OrderStatus.PENDING,
            delivery_status=DeliveryStatus.PENDING,
            webhook_confirmed=False,
            state_version=0,
        )
        self.store.create(order)
        order_id_ctx.set(order.order_id)
        orders_created_total.labels(service=self.service_name, currency=currency.value).inc()
        logger.info(
            "order_created order_id=%s product_id=%s amount_minor=%s currency=%s",
            order.order_id,
            product.product_id,
            amount_minor,
            currency.value,
        )
        return self._attach_remote_order(order), product

    def _attach_remote_order(self, order: Order) -> Order:
        try:
            gateway_order_id = self.gateway.create_remote_order(
                order.amount_minor,
                Currency(order.currency).value,
                order.order_id,
                {
                    "orderId": order.order_id,
                    "productId": order.product_id,
                    "gameUID": order.game_uid,
                    "customerEmail": order.customer_email,
                },
            )
        except GatewayError as exc:
            logger.error("order_left_pending_without_gateway_order order_id=%s", order.order_id)
            raise GatewayError(exc.message, order_id=order.order_id) from exc
        try:
            self.store.attach_gateway_order_id(order.order_id, gateway_order_id)
        except GatewayOrderAlreadyAttachedError:
            # A concurrent resume won; its remote order is the one the client pays.
            logger.warning(
                "gateway_order_attach_lost order_id=%s orphan_gateway_order_id=%s",
                order.order_id,
                gateway_order_id,
            )
        return self.store.find_by_order_id(order.order_id)

    def resume_remote_order(self, order_id: str) -> Order:
        """Retry only the remote call for an order whose gateway step failed."""

        order = self.store.find_by_order_id(order_id)
        order_id_ctx.set(order.order_id)
        if order.gateway_order_id:
            return order
        if order.status != OrderStatus.PENDING:
            raise ConflictError("Order is no longer pending")
        logger.info("gateway_order_resume order_id=%s", order.order_id)
        return self._attach_remote_order(order)

    def verify_payment(self, req: VerifyPaymentRequest) -> Order:
        """Client-confirmation trigger of the pending -> paid transition."""

        result = self.reconciler.confirm_payment(
            PaymentConfirmation(
                source=ConfirmationSource.CLIENT_CONFIRM,
                order_ref=req.order_id,
                gateway_payment_id=req.gateway_payment_id,
                signature=req.signature,
                gateway_order_id=req.gateway_order_id,
            )
        )
        if result.outcome == ConfirmOutcome.ORDER_NOT_FOUND:
            raise OrderNotFoundError()
        if result.outcome == ConfirmOutcome.UNAUTHENTICATED:
            raise UnauthenticatedError()
        if result.outcome == ConfirmOutcome.REJECTED:
            raise ConflictError("Order can no longer be paid")
        return result.order

    def get_order(self, order_id: str) -> Order:
        return self.store.find_by_order_id(order_id)

    def awaiting_fulfillment(self, limit: int = 100) -> list[Order]:
        return self.store.list_awaiting_fulfillment(limit)

    def update_delivery(self, order_id: str, expected: str, new: str) -> Order:
        """Record fulfillment progress reported by the delivery worker."""

        try:
            expected_status, new_status = DeliveryStatus(expected), DeliveryStatus(new)
        except ValueError as exc:
            raise ValidationError("Unknown delivery status") from exc
        try:
            outcome = self.store.update_delivery_status(order_id, expected_status, new_status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if outcome == UpdateOutcome.NOT_FOUND:
            raise OrderNotFoundError()
        if outcome == UpdateOutcome.CONFLICT:
            raise ConflictError("Delivery status changed concurrently or order is not paid")
        logger.info("delivery_status_updated order_id=%s status=%s", order_id, new_status.value)
        return self.store.find_by_order_id(order_id)

