"""Adapter around the payment gateway's order API.

Only remote order creation lives here; the adapter keeps no local state. Every
failure mode (timeout, transport, auth, gateway-side rejection, malformed
reply) surfaces as `GatewayError` so the caller can leave its order pending.
"""

from time import perf_counter
from typing import Protocol

import httpx

from coinpay.common.errors import GatewayError
from coinpay.common.logging import logger
from coinpay.common.metrics import gateway_latency_seconds, gateway_requests_total


class GatewayClient(Protocol):
    def create_remote_order(self, amount_minor: int, currency: str, receipt_id: str, metadata: dict) -> str:
        """Create the gateway-side order and return its id."""
        ...


class HttpGatewayClient:
    """`GatewayClient` backed by the gateway's REST API over httpx."""

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout_seconds: float = 10.0,
        service_name: str = "payments",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self._key_secret = key_secret
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name
        self._transport = transport

    def create_remote_order(self, amount_minor: int, currency: str, receipt_id: str, metadata: dict) -> str:
        body = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt_id,
            "notes": {key: str(value) for key, value in metadata.items()},
        }
        start = perf_counter()
        result = "error"
        try:
            with httpx.Client(
                timeout=self.timeout_seconds,
                auth=(self.key_id, self._key_secret),
                transport=self._transport,
            ) as client:
                resp = client.post(f"{self.base_url}/orders", json=body)
            if resp.status_code >= 400:
                logger.error(
                    "gateway_order_rejected receipt=%s status_code=%s body=%s",
                    receipt_id,
                    resp.status_code,
                    resp.text[:500],
                )
                result = "rejected"
                raise GatewayError()
            try:
                payload = resp.json()
            except ValueError as exc:
                raise GatewayError() from exc
            remote_id = payload.get("id") if isinstance(payload, dict) else None
            if not isinstance(remote_id, str) or not remote_id:
                logger.error("gateway_order_missing_id receipt=%s", receipt_id)
                raise GatewayError()
            result = "ok"
            return remote_id
        except httpx.TimeoutException as exc:
            result = "timeout"
            logger.error("gateway_order_timeout receipt=%s timeout_s=%s", receipt_id, self.timeout_seconds)
            raise GatewayError() from exc
        except httpx.HTTPError as exc:
            result = "transport_error"
            logger.error("gateway_order_transport_error receipt=%s error=%s", receipt_id, exc)
            raise GatewayError() from exc
        finally:
            gateway_latency_seconds.labels(service=self.service_name, operation="create_order").observe(
                max(0.0, perf_counter() - start)
            )
            gateway_requests_total.labels(
                service=self.service_name,
                operation="create_order",
                result=result,
            ).inc()
