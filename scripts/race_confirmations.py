"""Fire the client confirmation and the webhook for one order at the same time.

Every run should end with exactly one paid order and both calls reporting
success; repeated runs against an already paid order must be no-ops.
"""

import argparse
import asyncio
import hashlib
import hmac
import json
import time
from uuid import uuid4

import httpx


def sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def confirm_client(client: httpx.AsyncClient, args) -> tuple[str, int, float]:
    started = time.perf_counter()
    signature = sign(args.key_secret, f"{args.gateway_order_id}|{args.payment_id}".encode("utf-8"))
    resp = await client.post(
        f"{args.base_url}/payments/verify",
        json={
            "orderId": args.order_id,
            "gatewayOrderId": args.gateway_order_id,
            "gatewayPaymentId": args.payment_id,
            "signature": signature,
        },
    )
    return "client", resp.status_code, (time.perf_counter() - started) * 1000


async def confirm_webhook(client: httpx.AsyncClient, args) -> tuple[str, int, float]:
    started = time.perf_counter()
    raw = json.dumps(
        {
            "id": f"evt_{uuid4().hex[:14]}",
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": args.payment_id, "order_id": args.gateway_order_id}}},
        }
    ).encode("utf-8")
    resp = await client.post(
        f"{args.base_url}/payments/webhook",
        content=raw,
        headers={"content-type": "application/json", "X-Razorpay-Signature": sign(args.webhook_secret, raw)},
    )
    return "webhook", resp.status_code, (time.perf_counter() - started) * 1000


async def run(args) -> None:
    async with httpx.AsyncClient(timeout=10.0) as client:
        for round_number in range(1, args.rounds + 1):
            results = await asyncio.gather(confirm_client(client, args), confirm_webhook(client, args))
            for source, status_code, latency in results:
                print(f"round={round_number} source={source} status={status_code} latency_ms={latency:.2f}")
        resp = await client.get(f"{args.base_url}/payments/order/{args.order_id}")
        print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--gateway-order-id", required=True)
    parser.add_argument("--payment-id", default=f"pay_{uuid4().hex[:14]}")
    parser.add_argument("--key-secret", required=True)
    parser.add_argument("--webhook-secret", required=True)
    parser.add_argument("--rounds", type=int, default=3)
    asyncio.run(run(parser.parse_args()))
