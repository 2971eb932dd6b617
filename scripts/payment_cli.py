"""Command-line client for the orderpay HTTP API.

Each subcommand maps onto one endpoint; `--json` prints the raw response
envelope instead of the one-line summary.
"""

import argparse
import json
import os
import sys
from uuid import uuid4

import httpx


def _request(args) -> tuple[str, str, dict | None, dict | None, dict]:
    """Return (method, path, body, query params, extra headers) for `args`."""

    cmd = args.command
    if cmd == "create-order":
        body = {
            "buyer_id": args.buyer_id,
            "seller_id": args.seller_id,
            "product_id": args.product_id,
            "amount": args.amount,
            "currency": args.currency,
        }
        return "POST", "/orders", body, None, {}
    if cmd == "get-order":
        return "GET", f"/orders/{args.order_id}", None, None, {}
    if cmd == "order-history":
        return "GET", f"/orders/{args.order_id}/history", None, None, {}
    if cmd == "update-order":
        body = {"status": args.status, "expected_version": args.expected_version, "reason": args.reason}
        return "POST", f"/orders/{args.order_id}/transition", body, None, {}
    if cmd == "cancel-order":
        body = {"user_id": args.user_id, "expected_version": args.expected_version}
        return "POST", f"/orders/{args.order_id}/cancel", body, None, {}
    if cmd == "list-orders":
        params = {"role": args.role, "page": args.page, "limit": args.limit}
        return "GET", f"/users/{args.user_id}/orders", None, params, {}
    if cmd == "order-stats":
        return "GET", f"/users/{args.user_id}/order-stats", None, None, {}
    if cmd == "create-payment":
        body = {"order_id": args.order_id, "amount": args.amount, "currency": args.currency}
        headers = {"idempotency-key": args.idempotency_key or str(uuid4())}
        return "POST", "/payments", body, None, headers
    if cmd == "confirm-payment":
        return "POST", f"/payments/{args.payment_id}/confirm", {"client_secret": args.client_secret}, None, {}
    if cmd == "cancel-payment":
        return "POST", f"/payments/{args.payment_id}/cancel", None, None, {}
    if cmd == "get-payment":
        params = {"refresh": "true"} if args.refresh else None
        return "GET", f"/payments/{args.payment_id}", None, params, {}
    if cmd == "payment-history":
        params = {"page": args.page, "limit": args.limit}
        return "GET", f"/users/{args.user_id}/payments", None, params, {}
    if cmd == "create-refund":
        body = {"authorization_id": args.payment_id, "amount": args.amount, "reason": args.reason}
        return "POST", "/refunds", body, None, {}
    if cmd == "get-refund":
        return "GET", f"/refunds/{args.refund_id}", None, None, {}
    if cmd == "cancel-refund":
        return "POST", f"/refunds/{args.refund_id}/cancel", None, None, {}
    if cmd == "list-refunds":
        params = {"page": args.page, "limit": args.limit}
        return "GET", f"/users/{args.user_id}/refunds", None, params, {}
    if cmd == "refund-stats":
        return "GET", f"/users/{args.user_id}/refund-stats", None, None, {}
    if cmd == "webhook":
        # Raw bytes: the signature covers the exact payload.
        with args.payload_file as fh:
            payload = fh.read()
        return "POST", "/webhooks/gateway", payload, None, {"stripe-signature": args.signature}
    raise ValueError(f"unknown command: {cmd}")


def _add_paging(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--page", type=int, default=1)
    parser.add_argument("--limit", type=int, default=10)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="orderpay API client")
    parser.add_argument("--base-url", default=os.environ.get("ORDERPAY_URL", "http://localhost:8000"))
    parser.add_argument("--api-key", default=os.environ.get("API_KEY", "dev-secret"))
    parser.add_argument("--json", action="store_true", help="print the raw response envelope")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-order")
    p.add_argument("--buyer-id", required=True)
    p.add_argument("--seller-id", required=True)
    p.add_argument("--product-id", required=True)
    p.add_argument("--amount", type=int, required=True, help="minor currency units")
    p.add_argument("--currency", default="usd")

    for name in ("get-order", "order-history"):
        sub.add_parser(name).add_argument("--order-id", required=True)

    p = sub.add_parser("update-order")
    p.add_argument("--order-id", required=True)
    p.add_argument("--status", required=True, choices=["SHIPPED", "DELIVERED"])
    p.add_argument("--expected-version", type=int, required=True)
    p.add_argument("--reason", default="status_update")

    p = sub.add_parser("cancel-order")
    p.add_argument("--order-id", required=True)
    p.add_argument("--user-id", required=True)
    p.add_argument("--expected-version", type=int)

    p = sub.add_parser("list-orders")
    p.add_argument("--user-id", required=True)
    p.add_argument("--role", choices=["buyer", "seller"], default="buyer")
    _add_paging(p)

    for name in ("order-stats", "refund-stats"):
        sub.add_parser(name).add_argument("--user-id", required=True)

    p = sub.add_parser("create-payment")
    p.add_argument("--order-id", required=True)
    p.add_argument("--amount", type=int, required=True, help="minor currency units")
    p.add_argument("--currency", default="usd")
    p.add_argument("--idempotency-key")

    p = sub.add_parser("confirm-payment")
    p.add_argument("--payment-id", required=True)
    p.add_argument("--client-secret")

    sub.add_parser("cancel-payment").add_argument("--payment-id", required=True)

    p = sub.add_parser("get-payment")
    p.add_argument("--payment-id", required=True)
    p.add_argument("--refresh", action="store_true", help="converge with the gateway first")

    for name in ("payment-history", "list-refunds"):
        p = sub.add_parser(name)
        p.add_argument("--user-id", required=True)
        _add_paging(p)

    p = sub.add_parser("create-refund")
    p.add_argument("--payment-id", required=True)
    p.add_argument("--amount", type=int, help="defaults to the remaining refundable amount")
    p.add_argument("--reason")

    for name in ("get-refund", "cancel-refund"):
        sub.add_parser(name).add_argument("--refund-id", required=True)

    p = sub.add_parser("webhook", help="deliver a signed gateway event")
    p.add_argument("--payload-file", type=argparse.FileType("rb"), required=True)
    p.add_argument("--signature", required=True, help="stripe-signature header value")

    return parser


def summarize(envelope: dict) -> str:
    """One-line human summary of a response envelope."""

    if not envelope.get("success"):
        err = envelope.get("error") or {}
        return f"error: {err.get('code', 'unknown')}: {err.get('message', '')}"
    data = envelope.get("data")
    if isinstance(data, dict) and "items" in data:
        return f"{len(data['items'])} of {data.get('total', 0)} (page {data.get('page')}/{data.get('total_pages')})"
    if isinstance(data, dict) and "id" in data:
        return f"{data['id']} {data.get('status', '')}".strip()
    return json.dumps(data)


def run(args, client: httpx.Client) -> int:
    """Execute one parsed command; returns the process exit code."""

    method, path, body, params, headers = _request(args)
    headers = {"x-api-key": args.api_key, "x-correlation-id": str(uuid4()), **headers}
    if isinstance(body, bytes):
        resp = client.request(method, path, content=body, params=params, headers=headers)
    else:
        resp = client.request(method, path, json=body, params=params, headers=headers)
    try:
        envelope = resp.json()
    except ValueError:
        envelope = {"success": False, "error": {"code": "http_error", "message": resp.text}}
    print(json.dumps(envelope, indent=2) if args.json else summarize(envelope))
    return 0 if envelope.get("success") else 1


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    args = build_parser().parse_args(argv)
    with httpx.Client(base_url=args.base_url, timeout=10.0) as client:
        return run(args, client)


if __name__ == "__main__":
    sys.exit(main())
