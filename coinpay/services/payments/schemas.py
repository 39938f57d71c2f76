"""API request/response schemas for the payments endpoints.

Wire names are camelCase to match the storefront client; the verify endpoint
also accepts the gateway checkout widget's native field names.
"""

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from coinpay.common.state_machine import Currency, DeliveryStatus, OrderStatus


class CreateOrderRequest(BaseModel):
    """Payload accepted by `POST /payments/create-order`."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    product_id: str = Field(alias="productId", min_length=1)
    customer_email: str = Field(alias="customerEmail", pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    game_uid: str = Field(alias="gameUID", min_length=1)
    currency: str = Field(default="INR", min_length=3, max_length=3)


class VerifyPaymentRequest(BaseModel):
    """Client-side confirmation handed back by the gateway checkout."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    gateway_order_id: str = Field(
        min_length=1, validation_alias=AliasChoices("gatewayOrderId", "razorpay_order_id")
    )
    gateway_payment_id: str = Field(
        min_length=1, validation_alias=AliasChoices("gatewayPaymentId", "razorpay_payment_id")
    )
    signature: str = Field(min_length=1, validation_alias=AliasChoices("signature", "razorpay_signature"))
    order_id: str = Field(min_length=1, validation_alias=AliasChoices("orderId", "order_id"))


class DeliveryUpdateRequest(BaseModel):
    """Fulfillment worker report for one order."""

    model_config = ConfigDict(populate_by_name=True)

    expected_status: str = Field(alias="expectedStatus")
    status: str


class ProductView(BaseModel):
    id: str
    name: str
    coins: int
    price_inr: float = Field(serialization_alias="priceINR")
    price_usd: float = Field(serialization_alias="priceUSD")


class CreateOrderResponse(BaseModel):
    success: bool = True
    order_id: str = Field(serialization_alias="orderId")
    gateway_order_id: str = Field(serialization_alias="gatewayOrderId")
    amount: int
    currency: str
    key_id: str = Field(serialization_alias="keyId")
    product: ProductView
    customer_email: str = Field(serialization_alias="customerEmail")
    game_uid: str = Field(serialization_alias="gameUID")


class OrderView(BaseModel):
    """Read-only projection of an order."""

    id: str
    status: str
    delivery_status: str = Field(serialization_alias="deliveryStatus")
    product_name: str = Field(serialization_alias="productName")
    coins: int
    amount: float
    amount_minor: int = Field(serialization_alias="amountMinor")
    currency: str
    game_uid: str = Field(serialization_alias="gameUID")
    customer_email: str = Field(serialization_alias="customerEmail")
    gateway_order_id: str | None = Field(default=None, serialization_alias="gatewayOrderId")
    webhook_confirmed: bool = Field(serialization_alias="webhookConfirmed")
    created_at: datetime | None = Field(default=None, serialization_alias="createdAt")
    updated_at: datetime | None = Field(default=None, serialization_alias="updatedAt")


class OrderResponse(BaseModel):
    success: bool = True
    order: OrderView


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment verified successfully"
    order: OrderView


class FulfillmentQueueResponse(BaseModel):
    orders: list[OrderView]


class WebhookResponse(BaseModel):
    received: bool = True


def order_view(order) -> OrderView:
    """Project an `Order` row into its public shape."""

    return OrderView(
        id=order.order_id,
        status=OrderStatus(order.status).value,
        delivery_status=DeliveryStatus(order.delivery_status).value,
        product_name=order.product_name,
        coins=order.product_coins,
        amount=float(order.amount),
        amount_minor=order.amount_minor,
        currency=Currency(order.currency).value,
        game_uid=order.game_uid,
        customer_email=order.customer_email,
        gateway_order_id=order.gateway_order_id,
        webhook_confirmed=bool(order.webhook_confirmed),
        created_at=order.created_at,
        updated_at=order.updated_at,
    )
