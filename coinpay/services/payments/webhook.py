"""Gateway webhook ingress.

The signature is checked against the raw request bytes before anything is
parsed. Re-serializing a parsed body would admit payloads that are equal as
JSON but differ byte-wise from what the gateway signed.

Once the signature passes, the delivery is always acknowledged: unknown
orders, unsupported event types and unreadable envelopes are logged and
dropped, since a 2xx stops gateway retries and none of these get better with
a retry. Duplicate deliveries are absorbed by the reconciler's idempotence.
"""

import json
from dataclasses import dataclass

from coinpay.common.errors import UnauthenticatedError
from coinpay.common.logging import logger
from coinpay.common.metrics import signature_failures_total, webhook_events_total
from coinpay.services.payments.reconciler import (
    ConfirmOutcome,
    OrderReconciler,
    PaymentConfirmation,
)
from coinpay.services.payments.signatures import ConfirmationSource, SignatureVerifier

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})


@dataclass(frozen=True)
class WebhookAck:
    event: str
    outcome: ConfirmOutcome | None = None

    def to_response(self) -> dict:
        return {"received": True}


def _payment_entity(envelope: dict) -> dict:
    payload = envelope.get("payload") or {}
    payment = payload.get("payment") if isinstance(payload, dict) else None
    entity = payment.get("entity") if isinstance(payment, dict) else None
    return entity if isinstance(entity, dict) else {}


class WebhookIngress:
    def __init__(
        self,
        reconciler: OrderReconciler,
        verifier: SignatureVerifier,
        service_name: str = "payments",
    ) -> None:
        self.reconciler = reconciler
        self.verifier = verifier
        self.service_name = service_name

    def _count(self, event: str, result: str) -> None:
        webhook_events_total.labels(service=self.service_name, event=event or "unknown", result=result).inc()

    def handle(self, raw_body: bytes, signature: str | None) -> WebhookAck:
        """Verify, parse and reconcile one webhook delivery.

        Raises `UnauthenticatedError` when the signature does not match, which
        the HTTP layer turns into a non-2xx so the gateway retries and alerts.
        """

        if not self.verifier.verify_webhook(raw_body, signature):
            signature_failures_total.labels(service=self.service_name, source=ConfirmationSource.WEBHOOK.value).inc()
            self._count("unknown", "invalid_signature")
            logger.warning("webhook_signature_invalid body_bytes=%s", len(raw_body or b""))
            raise UnauthenticatedError("Invalid webhook signature")

        try:
            envelope = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.error("webhook_body_unreadable body_bytes=%s", len(raw_body))
            self._count("unknown", "unreadable")
            return WebhookAck(event="unknown")
        if not isinstance(envelope, dict):
            self._count("unknown", "unreadable")
            return WebhookAck(event="unknown")

        event = str(envelope.get("event") or "")
        if event not in CAPTURE_EVENTS:
            logger.info("webhook_event_ignored event=%s", event)
            self._count(event, "ignored")
            return WebhookAck(event=event)

        entity = _payment_entity(envelope)
        gateway_order_id = entity.get("order_id")
        gateway_payment_id = entity.get("id")
        if not isinstance(gateway_order_id, str) or not isinstance(gateway_payment_id, str):
            logger.error("webhook_payment_entity_incomplete event=%s", event)
            self._count(event, "incomplete")
            return WebhookAck(event=event)

        result = self.reconciler.confirm_payment(
            PaymentConfirmation(
                source=ConfirmationSource.WEBHOOK,
                order_ref=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                signature=signature,
                gateway_order_id=gateway_order_id,
                signed_payload=raw_body,
                payment_method=entity.get("method") if isinstance(entity.get("method"), str) else None,
                event_id=envelope.get("id") if isinstance(envelope.get("id"), str) else None,
            )
        )
        if result.outcome == ConfirmOutcome.ORDER_NOT_FOUND:
            logger.warning(
                "webhook_order_not_found event=%s gateway_order_id=%s payment_id=%s",
                event,
                gateway_order_id,
                gateway_payment_id,
            )
        elif result.success:
            logger.info(
                "webhook_order_reconciled order_id=%s outcome=%s",
                result.order.order_id,
                result.outcome.value,
            )
        self._count(event, result.outcome.value)
        return WebhookAck(event=event, outcome=result.outcome)
