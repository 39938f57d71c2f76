"""HMAC-SHA256 authentication of client confirmations and webhook bodies.

Client confirmations are signed with the gateway key secret over
`"{gateway_order_id}|{gateway_payment_id}"`. Webhooks are signed with the
separate webhook secret over the raw request body. The two secrets are never
interchangeable: `verify` selects the secret from the source.
"""

import hashlib
import hmac
from enum import Enum


class ConfirmationSource(str, Enum):
    CLIENT_CONFIRM = "client_confirm"
    WEBHOOK = "webhook"


def client_payload(gateway_order_id: str, gateway_payment_id: str) -> bytes:
    """Canonical bytes the gateway signs for a client-side confirmation."""

    return f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")


class SignatureVerifier:
    """Computes and checks gateway signatures. Verification fails closed."""

    def __init__(self, client_secret: str, webhook_secret: str) -> None:
        self._secrets = {
            ConfirmationSource.CLIENT_CONFIRM: client_secret.encode("utf-8"),
            ConfirmationSource.WEBHOOK: webhook_secret.encode("utf-8"),
        }

    def sign(self, source: ConfirmationSource, payload: bytes) -> str:
        secret = self._secrets[ConfirmationSource(source)]
        return hmac.new(secret, payload, hashlib.sha256).hexdigest()

    def verify(self, source: ConfirmationSource, payload: bytes, signature) -> bool:
        """Constant-time check of `signature` against the expected digest."""

        if not isinstance(signature, str) or not signature:
            return False
        if not isinstance(payload, (bytes, bytearray)):
            return False
        try:
            secret = self._secrets[ConfirmationSource(source)]
        except ValueError:
            return False
        if not secret:
            return False
        expected = hmac.new(secret, bytes(payload), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    def verify_client_confirmation(self, gateway_order_id: str, gateway_payment_id: str, signature) -> bool:
        if not isinstance(gateway_order_id, str) or not isinstance(gateway_payment_id, str):
            return False
        return self.verify(
            ConfirmationSource.CLIENT_CONFIRM,
            client_payload(gateway_order_id, gateway_payment_id),
            signature,
        )

    def verify_webhook(self, raw_body: bytes, signature) -> bool:
        return self.verify(ConfirmationSource.WEBHOOK, raw_body, signature)
