"""HTTP gateway adapter against a mocked transport."""

import base64
import json

import httpx
import pytest

from coinpay.common.errors import GatewayError
from coinpay.services.payments.gateway import HttpGatewayClient


def make_client(handler) -> HttpGatewayClient:
    return HttpGatewayClient(
        "https://gateway.test/v1/",
        "rzp_test_key",
        "test-key-secret",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_create_remote_order_posts_amount_and_receipt():
    """The adapter sends minor units, receipt and notes with basic auth."""

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_remote_1", "status": "created"})

    remote_id = make_client(handler).create_remote_order(49900, "INR", "ORD_1", {"orderId": "ORD_1", "coins": 600})

    assert remote_id == "order_remote_1"
    assert seen["url"] == "https://gateway.test/v1/orders"
    assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_test_key:test-key-secret").decode("ascii")
    assert seen["body"] == {
        "amount": 49900,
        "currency": "INR",
        "receipt": "ORD_1",
        "notes": {"orderId": "ORD_1", "coins": "600"},
    }


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"error": {"code": "BAD_REQUEST_ERROR"}}),
        httpx.Response(500, text="upstream down"),
        httpx.Response(200, json={"status": "created"}),
        httpx.Response(200, json=["order_remote_1"]),
        httpx.Response(200, text="<html>"),
    ],
)
def test_unusable_replies_raise_gateway_error(response):
    """Rejections and malformed replies surface as GatewayError."""

    with pytest.raises(GatewayError):
        make_client(lambda request: response).create_remote_order(100, "USD", "ORD_1", {})


@pytest.mark.parametrize(
    "exc",
    [httpx.ReadTimeout("timed out"), httpx.ConnectError("refused")],
)
def test_transport_failures_raise_gateway_error(exc):
    """Timeouts and connection errors surface as GatewayError."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    with pytest.raises(GatewayError) as info:
        make_client(handler).create_remote_order(100, "USD", "ORD_1", {})
    assert info.value.http_status == 500
    assert info.value.message == "Failed to create order"
