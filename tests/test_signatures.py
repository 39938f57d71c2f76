"""Signature checks fail closed and keep the two secrets apart."""

import hashlib
import hmac

from coinpay.services.payments.signatures import ConfirmationSource, SignatureVerifier, client_payload

from conftest import KEY_SECRET, WEBHOOK_SECRET


def test_client_confirmation_matches_gateway_digest(verifier):
    """Client signatures are HMAC-SHA256 hex over order and payment ids."""

    expected = hmac.new(KEY_SECRET.encode(), b"order_abc|pay_xyz", hashlib.sha256).hexdigest()

    assert verifier.verify_client_confirmation("order_abc", "pay_xyz", expected)


def test_tampered_payment_id_is_rejected(verifier):
    """Changing either id invalidates the signature."""

    signature = verifier.sign(ConfirmationSource.CLIENT_CONFIRM, client_payload("order_abc", "pay_xyz"))

    assert not verifier.verify_client_confirmation("order_abc", "pay_other", signature)


def test_secrets_are_not_interchangeable(verifier):
    """A client signature must never pass as a webhook signature, and vice versa."""

    payload = client_payload("order_abc", "pay_xyz")
    client_sig = verifier.sign(ConfirmationSource.CLIENT_CONFIRM, payload)
    webhook_sig = verifier.sign(ConfirmationSource.WEBHOOK, payload)

    assert client_sig != webhook_sig
    assert not verifier.verify(ConfirmationSource.WEBHOOK, payload, client_sig)
    assert not verifier.verify(ConfirmationSource.CLIENT_CONFIRM, payload, webhook_sig)


def test_webhook_signature_covers_exact_bytes(verifier):
    """Webhook signatures are checked against the raw body."""

    raw = b'{"event":"payment.captured","payload":{}}'
    signature = hmac.new(WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()

    assert verifier.verify_webhook(raw, signature)
    # Same JSON, different bytes.
    assert not verifier.verify_webhook(b'{"event": "payment.captured", "payload": {}}', signature)


def test_malformed_input_fails_closed(verifier):
    """Missing or odd-typed inputs verify as False, never raise."""

    raw = b"{}"
    assert not verifier.verify_webhook(raw, None)
    assert not verifier.verify_webhook(raw, "")
    assert not verifier.verify_webhook(raw, 12345)
    assert not verifier.verify_webhook(raw, "zz-not-hex")
    assert not verifier.verify_webhook(raw, "é" * 64)
    assert not verifier.verify_webhook("not-bytes", "abc")
    assert not verifier.verify("unknown-source", raw, "abc")
    assert not verifier.verify_client_confirmation(None, "pay_xyz", "abc")


def test_unconfigured_secret_rejects_everything():
    """An empty secret cannot authenticate anything."""

    verifier = SignatureVerifier("", WEBHOOK_SECRET)
    signature = hmac.new(b"", b"order_abc|pay_xyz", hashlib.sha256).hexdigest()

    assert not verifier.verify_client_confirmation("order_abc", "pay_xyz", signature)
