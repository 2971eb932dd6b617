"""payment_cli: argument mapping, headers and exit codes."""

import json

import httpx
import pytest

from scripts.payment_cli import build_parser, run, summarize


def _client(handler) -> httpx.Client:
    return httpx.Client(base_url="http://orderpay.test", transport=httpx.MockTransport(handler))


def _args(*argv):
    return build_parser().parse_args(["--api-key", "k-1", *argv])


def test_create_payment_sends_idempotency_key(capsys):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"success": True, "data": {"id": "pi_1", "status": "REQUIRES_CONFIRMATION"}})

    code = run(
        _args("create-payment", "--order-id", "o-1", "--amount", "5000", "--idempotency-key", "k-7"),
        _client(handler),
    )

    assert code == 0
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/payments"
    assert request.headers["x-api-key"] == "k-1"
    assert request.headers["idempotency-key"] == "k-7"
    assert "x-correlation-id" in request.headers
    assert json.loads(request.content) == {"order_id": "o-1", "amount": 5000, "currency": "usd"}
    assert capsys.readouterr().out.strip() == "pi_1 REQUIRES_CONFIRMATION"


def test_error_envelope_exits_non_zero(capsys):
    def handler(request):
        return httpx.Response(409, json={"success": False, "error": {"code": "version_conflict", "message": "stale"}})

    code = run(
        _args("update-order", "--order-id", "o-1", "--status", "SHIPPED", "--expected-version", "1"),
        _client(handler),
    )

    assert code == 1
    assert capsys.readouterr().out.strip() == "error: version_conflict: stale"


def test_non_json_response_is_an_error(capsys):
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    assert run(_args("get-order", "--order-id", "o-1"), _client(handler)) == 1
    assert "http_error" in capsys.readouterr().out


def test_listing_passes_paging_params(capsys):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200, json={"success": True, "data": {"items": [{}], "page": 2, "limit": 1, "total": 3, "total_pages": 3}}
        )

    code = run(_args("list-orders", "--user-id", "u-1", "--role", "seller", "--page", "2", "--limit", "1"), _client(handler))

    assert code == 0
    assert seen[0].url.path == "/users/u-1/orders"
    assert dict(seen[0].url.params) == {"role": "seller", "page": "2", "limit": "1"}
    assert capsys.readouterr().out.strip() == "1 of 3 (page 2/3)"


def test_refresh_flag_and_json_output(capsys):
    seen = []
    envelope = {"success": True, "data": {"id": "pi_1", "status": "SUCCEEDED"}}

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=envelope)

    code = run(_args("--json", "get-payment", "--payment-id", "pi_1", "--refresh"), _client(handler))

    assert code == 0
    assert seen[0].url.params["refresh"] == "true"
    assert json.loads(capsys.readouterr().out) == envelope


def test_update_order_only_accepts_fulfilment_statuses():
    with pytest.raises(SystemExit):
        _args("update-order", "--order-id", "o-1", "--status", "PAID", "--expected-version", "1")


def test_summarize_plain_data():
    assert summarize({"success": True, "data": {"status": "ok"}}) == '{"status": "ok"}'


def test_webhook_posts_raw_payload_with_signature(tmp_path, capsys):
    payload = b'{"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}'
    event_file = tmp_path / "event.json"
    event_file.write_bytes(payload)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"event_id": "evt_1", "received": True}})

    code = run(
        _args("webhook", "--payload-file", str(event_file), "--signature", "t=1,v1=abc"),
        _client(handler),
    )

    assert code == 0
    assert seen[0].url.path == "/webhooks/gateway"
    assert seen[0].content == payload
    assert seen[0].headers["stripe-signature"] == "t=1,v1=abc"
    assert json.loads(capsys.readouterr().out) == {"event_id": "evt_1", "received": True}
