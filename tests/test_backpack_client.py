import base64
import contextlib
import json
import sys
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as LocalServer
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from backpack_client import ExchangeClient, ResponseEnvelope, parse_response  # noqa: E402
from errors import (  # noqa: E402
    ExchangeRejected,
    HttpStatusError,
    RequestFailed,
    UnknownExchangeError,
)
from signer import Signer, build_message  # noqa: E402


@pytest.fixture
def key():
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def client(key):
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    signer = Signer(base64.b64encode(raw).decode(), window_ms=5000)
    return ExchangeClient("api-key", signer, backoff_sec=0)


def _recording(monkeypatch, client, outcomes):
    """Replace the HTTP layer with a queue of results / exceptions."""
    calls = []

    async def fake_raw_request(method, url, headers, params):
        calls.append(
            {"method": method, "url": url, "headers": dict(headers), "params": dict(params)}
        )
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(client, "_raw_request", fake_raw_request)
    return calls


@pytest.mark.asyncio
async def test_public_call_sends_no_auth_headers(monkeypatch, client):
    calls = _recording(monkeypatch, client, [{"lastPrice": "100"}])

    result = await client.call("ticker", {"symbol": "SOL_USDC"})

    assert result == {"lastPrice": "100"}
    assert calls[0]["method"] == "GET"
    assert calls[0]["url"] == "https://api.backpack.exchange/api/v1/ticker"
    assert calls[0]["headers"] == {}


@pytest.mark.asyncio
async def test_private_call_is_signed_with_fresh_timestamp_per_attempt(monkeypatch, client, key):
    stamps = iter([1000, 2000])
    monkeypatch.setattr(client, "_timestamp", lambda: next(stamps))
    calls = _recording(
        monkeypatch, client, [ConnectionError("reset"), {"id": "1"}]
    )
    params = {"symbol": "SOL_USDC", "clientId": 4}

    result = await client.call("orderExecute", params)

    assert result == {"id": "1"}
    assert [c["headers"]["X-Timestamp"] for c in calls] == ["1000", "2000"]
    for call, ts in zip(calls, (1000, 2000)):
        headers = call["headers"]
        assert call["method"] == "POST"
        assert headers["X-API-Key"] == "api-key"
        assert headers["X-Window"] == "5000"
        message = build_message("orderExecute", params, ts, 5000)
        key.public_key().verify(base64.b64decode(headers["X-Signature"]), message.encode())


@pytest.mark.asyncio
async def test_order_query_404_returns_none_without_retry(monkeypatch, client):
    calls = _recording(
        monkeypatch,
        client,
        [HttpStatusError(404, "https://api.backpack.exchange/api/v1/order", "not found")],
    )

    result = await client.call("orderQuery", {"symbol": "SOL_USDC", "clientId": 2})

    assert result is None
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_404_on_other_instruction_is_retried(monkeypatch, client):
    calls = _recording(
        monkeypatch, client, [HttpStatusError(404, "u", "")] * 4
    )

    with pytest.raises(RequestFailed) as info:
        await client.call("orderCancel", {"symbol": "SOL_USDC", "clientId": 2})

    assert len(calls) == 4
    assert info.value.instruction == "orderCancel"


@pytest.mark.asyncio
async def test_three_failures_then_success_returns_result(monkeypatch, client):
    calls = _recording(
        monkeypatch,
        client,
        [
            HttpStatusError(502, "u", "bad gateway"),
            ConnectionError("reset"),
            ExchangeRejected(["rate limited"], "u", {}),
            {"lastPrice": "101"},
        ],
    )

    result = await client.call("ticker", {"symbol": "SOL_USDC"}, max_retries=3)

    assert result == {"lastPrice": "101"}
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_exhausted_retries_raise_request_failed_with_body(monkeypatch, client):
    failure = HttpStatusError(500, "u", '{"message":"oops"}')
    _recording(monkeypatch, client, [failure] * 4)

    with pytest.raises(RequestFailed) as info:
        await client.call("orderQueryAll", {"symbol": "SOL_USDC"})

    err = info.value
    assert err.cause is failure
    assert err.__cause__ is failure
    assert err.body == '{"message":"oops"}'
    assert "orderQueryAll" in str(err)


@pytest.mark.asyncio
async def test_unknown_instruction_is_rejected_without_network(monkeypatch, client):
    calls = _recording(monkeypatch, client, [])
    with pytest.raises(ValueError):
        await client.call("marginBorrow")
    assert calls == []


def test_resolve_maps_methods():
    client = ExchangeClient("k", None, endpoint="https://example.test/")
    assert client.resolve("orderCancelAll") == ("DELETE", "https://example.test/api/v1/orders", True)
    assert client.resolve("depth") == ("GET", "https://example.test/api/v1/depth", False)
    assert client.resolve("withdraw") == ("POST", "https://example.test/wapi/v1/capital/withdrawals", True)


def test_parse_json_with_marked_errors_raises_exchange_rejected():
    body = json.dumps({"error": ["EInvalid price", "WIgnored", "EBad qty"]})
    with pytest.raises(ExchangeRejected) as info:
        parse_response("application/json; charset=utf-8", 200, {}, body, "u", {"price": "1"})
    assert info.value.messages == ["Invalid price", "Bad qty"]
    assert info.value.url == "u"
    assert info.value.body == {"price": "1"}


def test_parse_json_with_unmarked_errors_raises_unknown():
    body = json.dumps({"error": ["WSomething"]})
    with pytest.raises(UnknownExchangeError):
        parse_response("application/json", 200, {}, body, "u")


def test_parse_json_success_and_text_and_envelope():
    assert parse_response("application/json", 200, {}, '[{"id": 1}]', "u") == [{"id": 1}]
    assert parse_response("application/json", 200, {}, '{"error": []}', "u") == {"error": []}
    assert parse_response("text/plain; charset=utf-8", 200, {}, "pong", "u") == "pong"
    envelope = parse_response("text/html", 202, {"X-A": "b"}, "<html/>", "u")
    assert envelope == ResponseEnvelope(status=202, headers={"X-A": "b"}, body="<html/>")


@pytest.mark.asyncio
async def test_rejected_request_does_not_report_request_params_as_body(monkeypatch, client):
    _recording(
        monkeypatch,
        client,
        [ExchangeRejected(["Insufficient funds"], "u", {"symbol": "SOL_USDC"})],
    )

    with pytest.raises(RequestFailed) as info:
        await client.call("orderExecute", {"symbol": "SOL_USDC"}, max_retries=0)

    assert info.value.body is None
    assert str(info.value).endswith(":")


# ---------------------------------------------------------------------------
# Against a local aiohttp server


@contextlib.asynccontextmanager
async def _exchange_server(client):
    """Serve a tiny fake exchange and point ``client`` at it."""
    seen = []

    async def order_query(request):
        seen.append(("GET", request.path, dict(request.query), dict(request.headers)))
        return web.Response(status=404, text="order not found")

    async def order_execute(request):
        seen.append(("POST", request.path, await request.json(), dict(request.headers)))
        return web.json_response({"id": "11", "status": "New"})

    async def cancel_all(request):
        seen.append(("DELETE", request.path, await request.json(), dict(request.headers)))
        return web.Response(text="ok")

    async def open_orders(request):
        seen.append(("GET", request.path, dict(request.query), dict(request.headers)))
        return web.json_response({"error": ["EInsufficient funds"]})

    async def ticker(request):
        seen.append(("GET", request.path, dict(request.query), dict(request.headers)))
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    async def depth(request):
        seen.append(("GET", request.path, dict(request.query), dict(request.headers)))
        return web.Response(status=503, text="busy")

    app = web.Application()
    app.router.add_get("/api/v1/order", order_query)
    app.router.add_post("/api/v1/order", order_execute)
    app.router.add_delete("/api/v1/orders", cancel_all)
    app.router.add_get("/api/v1/orders", open_orders)
    app.router.add_get("/api/v1/ticker", ticker)
    app.router.add_get("/api/v1/depth", depth)

    async with LocalServer(app) as server:
        client.endpoint = f"http://{server.host}:{server.port}"
        try:
            yield seen
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_http_order_query_404_is_not_found_after_one_request(client, key):
    async with _exchange_server(client) as seen:
        result = await client.call("orderQuery", {"symbol": "SOL_USDC", "clientId": 3})

    assert result is None
    assert len(seen) == 1
    method, path, query, headers = seen[0]
    assert (method, path) == ("GET", "/api/v1/order")
    assert query == {"symbol": "SOL_USDC", "clientId": "3"}
    message = build_message(
        "orderQuery", {"symbol": "SOL_USDC", "clientId": 3}, int(headers["X-Timestamp"]), 5000
    )
    key.public_key().verify(base64.b64decode(headers["X-Signature"]), message.encode())


@pytest.mark.asyncio
async def test_http_post_and_delete_send_json_bodies(client):
    order = {
        "clientId": 4,
        "orderType": "Limit",
        "price": "101.50",
        "quantity": "0.5",
        "side": "Bid",
        "symbol": "SOL_USDC",
        "timeInForce": "GTC",
    }
    async with _exchange_server(client) as seen:
        placed = await client.call("orderExecute", order)
        cancelled = await client.call("orderCancelAll", {"symbol": "SOL_USDC"})

    assert placed == {"id": "11", "status": "New"}
    assert cancelled == "ok"
    assert seen[0][:3] == ("POST", "/api/v1/order", order)
    assert seen[1][:3] == ("DELETE", "/api/v1/orders", {"symbol": "SOL_USDC"})
    assert seen[0][3]["Content-Type"].startswith("application/json")


@pytest.mark.asyncio
async def test_http_public_call_is_unsigned_and_wraps_unknown_content(client):
    async with _exchange_server(client) as seen:
        result = await client.call("ticker", {"symbol": "SOL_USDC"})

    assert isinstance(result, ResponseEnvelope)
    assert result.status == 200
    assert result.body == "<html>maintenance</html>"
    assert "X-Signature" not in seen[0][3]


@pytest.mark.asyncio
async def test_http_error_status_is_retried_then_reported_with_response_body(client):
    async with _exchange_server(client) as seen:
        with pytest.raises(RequestFailed) as info:
            await client.call("depth", {"symbol": "SOL_USDC"}, max_retries=2)

    assert len(seen) == 3
    cause = info.value.cause
    assert isinstance(cause, HttpStatusError)
    assert cause.status == 503
    assert info.value.body == "busy"


@pytest.mark.asyncio
async def test_http_error_envelope_becomes_exchange_rejected(client):
    async with _exchange_server(client):
        with pytest.raises(RequestFailed) as info:
            await client.call("orderQueryAll", {"symbol": "SOL_USDC"}, max_retries=0)

    assert isinstance(info.value.cause, ExchangeRejected)
    assert info.value.cause.messages == ["Insufficient funds"]
    assert info.value.body is None
