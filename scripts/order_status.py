"""Poll the order projection until it reaches a target status or times out."""

import argparse
import json
import time

import httpx


def main() -> None:
    """CLI entrypoint for status polling."""

    parser = argparse.ArgumentParser(description="Fetch an order's status from the payments service.")
    parser.add_argument("order_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--until", default=None, help="Keep polling until this status, e.g. paid")
    parser.add_argument("--interval", type=float, default=2.0)
    parser.add_argument("--timeout-seconds", type=float, default=60.0)
    args = parser.parse_args()

    deadline = time.monotonic() + args.timeout_seconds
    while True:
        resp = httpx.get(f"{args.base_url}/payments/order/{args.order_id}", timeout=10.0)
        resp.raise_for_status()
        order = resp.json()["order"]
        if args.until is None or order["status"] == args.until:
            print(json.dumps(order, indent=2))
            return
        if time.monotonic() >= deadline:
            print(json.dumps(order, indent=2))
            raise SystemExit(f"order still {order['status']} after {args.timeout_seconds}s")
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
