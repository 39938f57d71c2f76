"""Reconciler: exactly-once paid transition across both confirmation sources."""

import pytest

from coinpay.common.errors import ConflictError, OrderNotFoundError
from coinpay.common.state_machine import DeliveryStatus, OrderStatus
from coinpay.services.payments.reconciler import ConfirmOutcome, PaymentConfirmation
from coinpay.services.payments.signatures import ConfirmationSource

from conftest import client_signature, webhook_body, webhook_signature


def client_confirmation(order, payment_id="pay_001", signature=None, gateway_order_id=None):
    return PaymentConfirmation(
        source=ConfirmationSource.CLIENT_CONFIRM,
        order_ref=order.order_id,
        gateway_payment_id=payment_id,
        signature=signature or client_signature(order.gateway_order_id, payment_id),
        gateway_order_id=gateway_order_id or order.gateway_order_id,
    )


def webhook_confirmation(order, payment_id="pay_001", method="upi"):
    raw = webhook_body(order.gateway_order_id, payment_id, method=method)
    return PaymentConfirmation(
        source=ConfirmationSource.WEBHOOK,
        order_ref=order.gateway_order_id,
        gateway_payment_id=payment_id,
        signature=webhook_signature(raw),
        gateway_order_id=order.gateway_order_id,
        signed_payload=raw,
        payment_method=method,
    )


@pytest.fixture
def write_counter(store, monkeypatch):
    """Counts every write the reconciler asks the store to make."""

    counts = {"compare_and_update": 0, "annotate_webhook_confirmed": 0}
    for name in counts:
        real = getattr(store, name)

        def counted(*args, _real=real, _name=name, **kwargs):
            counts[_name] += 1
            return _real(*args, **kwargs)

        monkeypatch.setattr(store, name, counted)
    return counts


def test_client_confirmation_marks_order_paid(reconciler, pending_order):
    """An authenticated client confirmation moves pending to paid."""

    result = reconciler.confirm_payment(client_confirmation(pending_order))

    assert result.outcome == ConfirmOutcome.CONFIRMED
    assert result.success
    assert result.order.status == OrderStatus.PAID
    assert result.order.delivery_status == DeliveryStatus.PROCESSING
    assert result.order.gateway_payment_id == "pay_001"
    assert result.order.webhook_confirmed is False


def test_repeated_confirmation_is_a_no_op(reconciler, store, pending_order, write_counter):
    """Confirming twice performs exactly one write."""

    first = reconciler.confirm_payment(client_confirmation(pending_order))
    after_first = store.find_by_order_id(pending_order.order_id)

    second = reconciler.confirm_payment(client_confirmation(pending_order))
    after_second = store.find_by_order_id(pending_order.order_id)

    assert first.outcome == ConfirmOutcome.CONFIRMED
    assert second.outcome == ConfirmOutcome.ALREADY_PAID
    assert second.success
    assert write_counter["compare_and_update"] == 1
    assert after_second.updated_at == after_first.updated_at
    assert after_second.state_version == after_first.state_version


def test_duplicate_webhooks_write_once(reconciler, store, pending_order, write_counter):
    """Redelivered webhooks converge on a single paid transition."""

    confirmation = webhook_confirmation(pending_order)

    results = [reconciler.confirm_payment(confirmation) for _ in range(3)]

    assert [r.outcome for r in results] == [
        ConfirmOutcome.CONFIRMED,
        ConfirmOutcome.ALREADY_PAID,
        ConfirmOutcome.ALREADY_PAID,
    ]
    assert write_counter["compare_and_update"] == 1
    assert write_counter["annotate_webhook_confirmed"] == 0
    order = store.find_by_order_id(pending_order.order_id)
    assert order.webhook_confirmed is True
    assert order.payment_method == "upi"


def test_client_then_webhook_converges(reconciler, store, pending_order):
    """A late webhook only corroborates a client-confirmed order."""

    client = reconciler.confirm_payment(client_confirmation(pending_order))
    webhook = reconciler.confirm_payment(webhook_confirmation(pending_order))

    assert client.outcome == ConfirmOutcome.CONFIRMED
    assert webhook.outcome == ConfirmOutcome.ALREADY_PAID
    order = store.find_by_order_id(pending_order.order_id)
    assert order.status == OrderStatus.PAID
    assert order.webhook_confirmed is True
    assert order.gateway_payment_id == "pay_001"
    assert order.payment_method == "upi"


def test_webhook_then_client_converges(reconciler, store, pending_order):
    """A late client confirmation sees the webhook's paid order."""

    webhook = reconciler.confirm_payment(webhook_confirmation(pending_order))
    client = reconciler.confirm_payment(client_confirmation(pending_order))

    assert webhook.outcome == ConfirmOutcome.CONFIRMED
    assert client.outcome == ConfirmOutcome.ALREADY_PAID
    order = store.find_by_order_id(pending_order.order_id)
    assert order.status == OrderStatus.PAID
    assert order.webhook_confirmed is True


def test_tampered_payment_id_is_rejected_without_write(reconciler, store, pending_order, write_counter):
    """A signature over another payment id changes nothing."""

    signature = client_signature(pending_order.gateway_order_id, "pay_001")

    result = reconciler.confirm_payment(client_confirmation(pending_order, payment_id="pay_666", signature=signature))

    assert result.outcome == ConfirmOutcome.UNAUTHENTICATED
    assert not result.success
    assert write_counter["compare_and_update"] == 0
    order = store.find_by_order_id(pending_order.order_id)
    assert order.status == OrderStatus.PENDING
    assert order.gateway_payment_id is None
    assert order.updated_at == pending_order.updated_at


def test_signature_for_another_gateway_order_is_rejected(reconciler, pending_order):
    """A valid signature over some other gateway order must not pay this one."""

    signature = client_signature("order_other", "pay_001")

    result = reconciler.confirm_payment(
        client_confirmation(pending_order, signature=signature, gateway_order_id="order_other")
    )

    assert result.outcome == ConfirmOutcome.UNAUTHENTICATED


def test_webhook_signed_with_client_secret_is_rejected(reconciler, store, pending_order):
    """The two signing secrets are not interchangeable."""

    raw = webhook_body(pending_order.gateway_order_id, "pay_001")
    confirmation = PaymentConfirmation(
        source=ConfirmationSource.WEBHOOK,
        order_ref=pending_order.gateway_order_id,
        gateway_payment_id="pay_001",
        signature=webhook_signature(raw, secret="test-key-secret"),
        signed_payload=raw,
    )

    assert reconciler.confirm_payment(confirmation).outcome == ConfirmOutcome.UNAUTHENTICATED
    assert store.find_by_order_id(pending_order.order_id).status == OrderStatus.PENDING


def test_interleaved_confirmations_yield_one_transition(reconciler, store, pending_order, monkeypatch, write_counter):
    """Both triggers read `pending`; only one conditional write may succeed."""

    stale = store.find_by_order_id(pending_order.order_id)

    first = reconciler.confirm_payment(client_confirmation(pending_order))
    # The webhook handler loaded the order before the client confirmation committed.
    monkeypatch.setattr(store, "find_by_gateway_order_id", lambda _gateway_order_id: stale)
    second = reconciler.confirm_payment(webhook_confirmation(pending_order))

    assert first.outcome == ConfirmOutcome.CONFIRMED
    assert second.outcome == ConfirmOutcome.ALREADY_PAID
    assert write_counter["compare_and_update"] == 2
    order = store.find_by_order_id(pending_order.order_id)
    assert order.status == OrderStatus.PAID
    assert order.gateway_payment_id == "pay_001"
    assert order.state_version == stale.state_version + 1
    assert order.webhook_confirmed is True


def test_unknown_order_is_reported(reconciler, pending_order, write_counter):
    """Unknown local or gateway ids report not-found without writing."""

    missing_local = PaymentConfirmation(
        source=ConfirmationSource.CLIENT_CONFIRM,
        order_ref="ORD_missing",
        gateway_payment_id="pay_001",
        signature="deadbeef",
    )
    raw = webhook_body("order_missing", "pay_001")
    missing_remote = PaymentConfirmation(
        source=ConfirmationSource.WEBHOOK,
        order_ref="order_missing",
        gateway_payment_id="pay_001",
        signature=webhook_signature(raw),
        signed_payload=raw,
    )

    assert reconciler.confirm_payment(missing_local).outcome == ConfirmOutcome.ORDER_NOT_FOUND
    assert reconciler.confirm_payment(missing_remote).outcome == ConfirmOutcome.ORDER_NOT_FOUND
    assert write_counter["compare_and_update"] == 0


def test_failed_order_cannot_be_paid(reconciler, store, pending_order):
    """A failed order rejects a later valid confirmation."""

    reconciler.mark_failed(pending_order.order_id, reason="abandoned")

    result = reconciler.confirm_payment(client_confirmation(pending_order))

    assert result.outcome == ConfirmOutcome.REJECTED
    assert store.find_by_order_id(pending_order.order_id).status == OrderStatus.FAILED


def test_mark_failed_requires_pending(reconciler, pending_order):
    """Only pending orders can be failed."""

    reconciler.confirm_payment(client_confirmation(pending_order))

    with pytest.raises(ConflictError):
        reconciler.mark_failed(pending_order.order_id, reason="late")
    with pytest.raises(OrderNotFoundError):
        reconciler.mark_failed("ORD_missing", reason="late")
