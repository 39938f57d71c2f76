"""Sign and POST a webhook envelope to the payments service.

Useful for duplicate-delivery and out-of-order testing: `--repeat` resends the
exact same bytes, which the service must absorb without a second write.
"""

import argparse
import hashlib
import hmac
import json
from pathlib import Path
from uuid import uuid4

import httpx


def captured_envelope(gateway_order_id: str, payment_id: str, method: str) -> dict:
    """Minimal `payment.captured` envelope in the gateway's shape."""

    return {
        "id": f"evt_{uuid4().hex[:14]}",
        "entity": "event",
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "method": method,
                    "status": "captured",
                }
            }
        },
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a signed webhook to the payments service.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True, help="Webhook secret shared with the gateway")
    parser.add_argument("--header", default="X-Razorpay-Signature")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to a raw envelope to send as-is")
    parser.add_argument("--gateway-order-id", default=None)
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--method", default="upi")
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--tamper", action="store_true", help="Flip one byte after signing")
    args = parser.parse_args()

    if args.json_file:
        raw = Path(args.json_file).read_bytes()
    elif args.gateway_order_id and args.payment_id:
        raw = json.dumps(captured_envelope(args.gateway_order_id, args.payment_id, args.method)).encode("utf-8")
    else:
        raise SystemExit("Provide --file or both --gateway-order-id and --payment-id")

    signature = hmac.new(args.secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if args.tamper:
        raw = raw.replace(b"captured", b"Captured", 1)

    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.repeat + 1):
            resp = client.post(
                f"{args.base_url}/payments/webhook",
                content=raw,
                headers={"content-type": "application/json", args.header: signature},
            )
            print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
