"""HTTP surface for coin-pack orders: creation, confirmation, webhook, status."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from coinpay.common.config import settings
from coinpay.common.db import SessionLocal
from coinpay.common.errors import CoinpayError
from coinpay.common.events import KafkaBus
from coinpay.common.logging import configure_logging, logger, order_id_ctx, trace_id_ctx
from coinpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from coinpay.common.startup import log_startup_config
from coinpay.common.state_machine import Currency
from coinpay.common.tracing import instrument_app, setup_tracing
from coinpay.services.payments.catalog import SqlProductCatalog
from coinpay.services.payments.gateway import HttpGatewayClient
from coinpay.services.payments.outbox import OutboxRelay
from coinpay.services.payments.reconciler import OrderReconciler
from coinpay.services.payments.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    DeliveryUpdateRequest,
    FulfillmentQueueResponse,
    OrderResponse,
    ProductView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
    order_view,
)
from coinpay.services.payments.service import OrderService
from coinpay.services.payments.signatures import SignatureVerifier
from coinpay.services.payments.store import OrderStore
from coinpay.services.payments.webhook import WebhookIngress

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_DSN",
        "GATEWAY_BASE_URL",
        "GATEWAY_KEY_ID",
        "GATEWAY_KEY_SECRET",
        "GATEWAY_WEBHOOK_SECRET",
        "KAFKA_BOOTSTRAP_SERVERS",
    ],
)

verifier = SignatureVerifier(settings.gateway_key_secret, settings.gateway_webhook_secret)
store = OrderStore(SessionLocal, fulfillment_topic=settings.fulfillment_topic)
reconciler = OrderReconciler(store, verifier, service_name=settings.service_name)
service = OrderService(
    store,
    SqlProductCatalog(SessionLocal),
    HttpGatewayClient(
        settings.gateway_base_url,
        settings.gateway_key_id,
        settings.gateway_key_secret,
        timeout_seconds=settings.gateway_timeout_seconds,
        service_name=settings.service_name,
    ),
    reconciler,
    key_id=settings.gateway_key_id,
    service_name=settings.service_name,
)
ingress = WebhookIngress(reconciler, verifier, service_name=settings.service_name)


def get_service() -> OrderService:
    return service


def get_ingress() -> WebhookIngress:
    return ingress


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the fulfillment outbox publisher with app lifecycle."""

    kafka = KafkaBus()
    publisher_task = None
    if settings.outbox_publisher_enabled:
        relay = OutboxRelay(SessionLocal, kafka, service_name=settings.service_name)
        publisher_task = asyncio.create_task(relay.run_forever())
    yield
    if publisher_task is not None:
        publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="Coinpay Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency, and bind a trace id for logging."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        trace_id_ctx.reset(trace_token)
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(CoinpayError)
async def coinpay_error_handler(request: Request, exc: CoinpayError):
    """Stable code/message envelope for every expected failure."""

    log = logger.error if exc.http_status >= 500 else logger.warning
    log("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("request_invalid path=%s errors=%s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Missing or invalid required fields",
                "details": [
                    {"field": ".".join(str(loc) for loc in e["loc"][1:]), "message": e["msg"]}
                    for e in exc.errors()
                ],
            },
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Catch-all: log server-side, never leak internals."""

    logger.error("request_crashed path=%s error=%s", request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
    )


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject internal calls that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.post("/payments/create-order", response_model=CreateOrderResponse)
def create_order(req: CreateOrderRequest, service: OrderService = Depends(get_service)):
    """Create a pending order and its remote gateway order."""

    order, product = service.create_order(req)
    return CreateOrderResponse(
        order_id=order.order_id,
        gateway_order_id=order.gateway_order_id,
        amount=order.amount_minor,
        currency=Currency(order.currency).value,
        key_id=service.key_id,
        product=ProductView(
            id=product.product_id,
            name=product.name,
            coins=product.coins,
            price_inr=float(product.price_inr),
            price_usd=float(product.price_usd),
        ),
        customer_email=order.customer_email,
        game_uid=order.game_uid,
    )


@app.post("/payments/order/{order_id}/gateway-order", response_model=OrderResponse)
def resume_gateway_order(order_id: str, service: OrderService = Depends(get_service)):
    """Retry remote order creation for an order left pending by a gateway failure."""

    order = service.resume_remote_order(order_id)
    return OrderResponse(order=order_view(order))


@app.post("/payments/verify", response_model=VerifyPaymentResponse)
def verify_payment(req: VerifyPaymentRequest, service: OrderService = Depends(get_service)):
    """Client-side confirmation: verify the checkout signature and mark the order paid."""

    order_id_ctx.set(req.order_id)
    order = service.verify_payment(req)
    return VerifyPaymentResponse(order=order_view(order))


@app.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request, ingress: WebhookIngress = Depends(get_ingress)):
    """Gateway push notification. The body is read raw so the signature covers the exact bytes."""

    raw_body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    ack = await run_in_threadpool(ingress.handle, raw_body, signature)
    return ack.to_response()


@app.get("/payments/order/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, service: OrderService = Depends(get_service)):
    """Read-only order projection used by the storefront's status polling."""

    return OrderResponse(order=order_view(service.get_order(order_id)))


@app.get(
    "/internal/orders/awaiting-fulfillment",
    response_model=FulfillmentQueueResponse,
    dependencies=[Depends(enforce_api_key)],
)
def awaiting_fulfillment(
    limit: int = Query(default=100, ge=1, le=500),
    service: OrderService = Depends(get_service),
):
    """Paid orders the fulfillment worker still has to deliver."""

    return FulfillmentQueueResponse(orders=[order_view(o) for o in service.awaiting_fulfillment(limit)])


@app.post(
    "/internal/orders/{order_id}/delivery",
    response_model=OrderResponse,
    dependencies=[Depends(enforce_api_key)],
)
def update_delivery(order_id: str, req: DeliveryUpdateRequest, service: OrderService = Depends(get_service)):
    """Fulfillment worker reports delivery progress."""

    order = service.update_delivery(order_id, req.expected_status, req.status)
    return OrderResponse(order=order_view(order))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
