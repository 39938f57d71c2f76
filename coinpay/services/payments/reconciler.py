"""Order reconciliation: applies authenticated "paid" events exactly once.

Both trigger paths (the browser's confirmation call and the gateway webhook)
end up in `OrderReconciler.confirm_payment`. Applying the same authenticated
payment any number of times, from either source, in any order, converges on
one paid order:

    pending --(authenticated paid event)--> paid
    pending --(manual / failure path)-----> failed

A conditional-write conflict means another trigger won the race; it is
resolved by re-reading the order and reporting idempotent success, never by
retrying the write or surfacing an error.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from coinpay.common.errors import ConflictError, OrderNotFoundError
from coinpay.common.logging import logger, order_id_ctx, source_ctx
from coinpay.common.metrics import (
    payment_confirm_seconds,
    payment_confirmations_total,
    signature_failures_total,
)
from coinpay.common.state_machine import DeliveryStatus, OrderStatus
from coinpay.services.payments.models import Order
from coinpay.services.payments.signatures import ConfirmationSource, SignatureVerifier, client_payload
from coinpay.services.payments.store import OrderStore, UpdateOutcome


class ConfirmOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_PAID = "already_paid"
    UNAUTHENTICATED = "unauthenticated"
    ORDER_NOT_FOUND = "order_not_found"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PaymentConfirmation:
    """One authenticated-or-not claim that an order has been paid.

    `order_ref` is the local order id for client confirmations and the
    gateway's order id for webhooks. `signed_payload` is the raw webhook body;
    client confirmations rebuild theirs from the stored gateway order id.
    """

    source: ConfirmationSource
    order_ref: str
    gateway_payment_id: str
    signature: str | None
    gateway_order_id: str | None = None
    signed_payload: bytes | None = None
    payment_method: str | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class ConfirmResult:
    outcome: ConfirmOutcome
    order: Order | None = None

    @property
    def success(self) -> bool:
        return self.outcome in (ConfirmOutcome.CONFIRMED, ConfirmOutcome.ALREADY_PAID)


class OrderReconciler:
    """Owns the pending -> paid transition for both confirmation sources."""

    def __init__(self, store: OrderStore, verifier: SignatureVerifier, service_name: str = "payments") -> None:
        self.store = store
        self.verifier = verifier
        self.service_name = service_name

    def _lookup(self, confirmation: PaymentConfirmation) -> Order:
        if confirmation.source == ConfirmationSource.WEBHOOK:
            return self.store.find_by_gateway_order_id(confirmation.order_ref)
        return self.store.find_by_order_id(confirmation.order_ref)

    def _authenticate(self, order: Order, confirmation: PaymentConfirmation) -> bool:
        if confirmation.source == ConfirmationSource.WEBHOOK:
            if confirmation.signed_payload is None:
                return False
            return self.verifier.verify(ConfirmationSource.WEBHOOK, confirmation.signed_payload, confirmation.signature)

        # The signature must cover the gateway order this local order was issued.
        if not order.gateway_order_id:
            return False
        if confirmation.gateway_order_id is not None and confirmation.gateway_order_id != order.gateway_order_id:
            return False
        return self.verifier.verify(
            ConfirmationSource.CLIENT_CONFIRM,
            client_payload(order.gateway_order_id, confirmation.gateway_payment_id),
            confirmation.signature,
        )

    def _record(self, source: ConfirmationSource, outcome: ConfirmOutcome) -> None:
        payment_confirmations_total.labels(
            service=self.service_name,
            source=ConfirmationSource(source).value,
            outcome=outcome.value,
        ).inc()

    def _settled(self, order: Order, confirmation: PaymentConfirmation) -> ConfirmResult:
        """Idempotent path for an order some trigger has already moved past pending."""

        if order.status != OrderStatus.PAID:
            logger.warning(
                "payment_confirmation_rejected order_id=%s status=%s",
                order.order_id,
                OrderStatus(order.status).value,
            )
            return ConfirmResult(ConfirmOutcome.REJECTED, order)

        if order.gateway_payment_id and order.gateway_payment_id != confirmation.gateway_payment_id:
            logger.warning(
                "payment_id_mismatch_on_paid_order order_id=%s stored=%s presented=%s",
                order.order_id,
                order.gateway_payment_id,
                confirmation.gateway_payment_id,
            )
        if confirmation.source == ConfirmationSource.WEBHOOK and not order.webhook_confirmed:
            if self.store.annotate_webhook_confirmed(order.order_id, confirmation.payment_method):
                order = self.store.find_by_order_id(order.order_id)
        return ConfirmResult(ConfirmOutcome.ALREADY_PAID, order)

    def confirm_payment(self, confirmation: PaymentConfirmation) -> ConfirmResult:
        """Apply one paid event. Never writes unless the signature checks out."""

        source = ConfirmationSource(confirmation.source)
        source_token = source_ctx.set(source.value)
        try:
            result = self._confirm(confirmation, source)
        finally:
            source_ctx.reset(source_token)
        self._record(source, result.outcome)
        return result

    def _confirm(self, confirmation: PaymentConfirmation, source: ConfirmationSource) -> ConfirmResult:
        try:
            order = self._lookup(confirmation)
        except OrderNotFoundError:
            logger.warning("payment_confirmation_unknown_order source=%s ref=%s", source.value, confirmation.order_ref)
            return ConfirmResult(ConfirmOutcome.ORDER_NOT_FOUND)
        order_id_ctx.set(order.order_id)

        if not self._authenticate(order, confirmation):
            signature_failures_total.labels(service=self.service_name, source=source.value).inc()
            logger.warning(
                "payment_signature_mismatch order_id=%s source=%s payment_id=%s",
                order.order_id,
                source.value,
                confirmation.gateway_payment_id,
            )
            return ConfirmResult(ConfirmOutcome.UNAUTHENTICATED, order)

        if order.status != OrderStatus.PENDING:
            return self._settled(order, confirmation)

        mutation = {
            "status": OrderStatus.PAID,
            "delivery_status": DeliveryStatus.PROCESSING,
            "gateway_payment_id": confirmation.gateway_payment_id,
            "confirmation_signature": confirmation.signature,
            "webhook_confirmed": source == ConfirmationSource.WEBHOOK,
        }
        if confirmation.payment_method:
            mutation["payment_method"] = confirmation.payment_method
        outcome = self.store.compare_and_update(
            order.order_id,
            expected_status=OrderStatus.PENDING,
            mutation=mutation,
            reason=f"payment_confirmed:{source.value}",
            event_id=confirmation.event_id,
        )

        if outcome == UpdateOutcome.NOT_FOUND:
            return ConfirmResult(ConfirmOutcome.ORDER_NOT_FOUND)

        order = self.store.find_by_order_id(order.order_id)
        if outcome == UpdateOutcome.CONFLICT:
            logger.info("payment_confirmation_converged order_id=%s source=%s", order.order_id, source.value)
            return self._settled(order, confirmation)

        logger.info(
            "order_paid order_id=%s source=%s payment_id=%s",
            order.order_id,
            source.value,
            confirmation.gateway_payment_id,
        )
        self._observe_confirm_latency(order, source)
        return ConfirmResult(ConfirmOutcome.CONFIRMED, order)

    def _observe_confirm_latency(self, order: Order, source: ConfirmationSource) -> None:
        if order.created_at is None:
            return
        created_at = order.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        payment_confirm_seconds.labels(service=self.service_name, source=source.value).observe(elapsed)

    def mark_failed(self, order_id: str, reason: str) -> Order:
        """Manual pending -> failed transition through the same conditional write."""

        outcome = self.store.compare_and_update(
            order_id,
            expected_status=OrderStatus.PENDING,
            mutation={"status": OrderStatus.FAILED},
            reason=f"order_failed:{reason}",
        )
        if outcome == UpdateOutcome.NOT_FOUND:
            raise OrderNotFoundError()
        if outcome == UpdateOutcome.CONFLICT:
            raise ConflictError("Order is no longer pending")
        logger.info("order_failed order_id=%s reason=%s", order_id, reason)
        return self.store.find_by_order_id(order_id)
