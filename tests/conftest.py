"""Shared fixtures: in-memory database, fake gateway, signing helpers."""

import os

# Settings are read at import time, so these must be set before coinpay imports.
os.environ.setdefault("DATABASE_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("GATEWAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("GATEWAY_KEY_SECRET", "test-key-secret")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("OUTBOX_PUBLISHER_ENABLED", "false")

import json
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coinpay.common.db import Base
from coinpay.common.errors import GatewayError, ProductNotFoundError
from coinpay.services.payments.catalog import ProductSnapshot
from coinpay.services.payments.reconciler import OrderReconciler
from coinpay.services.payments.schemas import CreateOrderRequest
from coinpay.services.payments.service import OrderService
from coinpay.services.payments.signatures import ConfirmationSource, SignatureVerifier, client_payload
from coinpay.services.payments.store import OrderStore
from coinpay.services.payments.webhook import WebhookIngress

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"

PRODUCTS = {
    "pack-600": ProductSnapshot("pack-600", "600 UC", 600, Decimal("499"), Decimal("5.99")),
    "pack-3000": ProductSnapshot("pack-3000", "3000 UC", 3000, Decimal("1999"), Decimal("23.99")),
}


class FakeGateway:
    """In-process `GatewayClient` that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.fail = False

    def create_remote_order(self, amount_minor: int, currency: str, receipt_id: str, metadata: dict) -> str:
        self.calls.append(
            {"amount": amount_minor, "currency": currency, "receipt": receipt_id, "notes": metadata}
        )
        if self.fail:
            raise GatewayError()
        return f"order_gw{len(self.calls):04d}"


class StaticCatalog:
    def __init__(self, products: dict[str, ProductSnapshot]) -> None:
        self.products = dict(products)

    def find_by_id(self, product_id: str) -> ProductSnapshot:
        try:
            return self.products[product_id]
        except KeyError:
            raise ProductNotFoundError() from None


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(KEY_SECRET, WEBHOOK_SECRET)


@pytest.fixture
def store(session_factory) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def reconciler(store, verifier) -> OrderReconciler:
    return OrderReconciler(store, verifier)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog(PRODUCTS)


@pytest.fixture
def service(store, catalog, gateway, reconciler) -> OrderService:
    return OrderService(store, catalog, gateway, reconciler, key_id="rzp_test_key")


@pytest.fixture
def ingress(reconciler, verifier) -> WebhookIngress:
    return WebhookIngress(reconciler, verifier)


@pytest.fixture
def pending_order(service):
    """A pending order with its gateway order already attached."""

    order, _ = service.create_order(
        CreateOrderRequest(productId="pack-600", customerEmail="Buyer@Example.com", gameUID="5123456789")
    )
    return order


def client_signature(gateway_order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return SignatureVerifier(secret, WEBHOOK_SECRET).sign(
        ConfirmationSource.CLIENT_CONFIRM, client_payload(gateway_order_id, payment_id)
    )


def webhook_body(gateway_order_id: str, payment_id: str, event: str = "payment.captured", method: str = "upi") -> bytes:
    return json.dumps(
        {
            "id": "evt_test_0001",
            "entity": "event",
            "event": event,
            "payload": {"payment": {"entity": {"id": payment_id, "order_id": gateway_order_id, "method": method}}},
        }
    ).encode("utf-8")


def webhook_signature(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return SignatureVerifier(KEY_SECRET, secret).sign(ConfirmationSource.WEBHOOK, raw_body)
