import asyncio
import gzip

import httpx
import pytest
from fastapi.testclient import TestClient

from cors_gateway.config.service import GatewaySettings
from cors_gateway.gateway.proxy import ProxyHandler, filter_headers, rewrite_path
from cors_gateway.main import create_app

TARGET = "http://backend.test:20080"


@pytest.mark.parametrize(
    "inbound, forwarded",
    [
        ("/foo/bar", "/api/foo/bar"),
        ("/", "/api/"),
        ("/users", "/api/users"),
    ],
)
def test_rewrite_path(inbound, forwarded):
    assert rewrite_path(inbound) == forwarded


def test_filter_headers_drops_hop_by_hop_and_connection_tokens():
    headers = [
        ("Connection", "keep-alive, X-Session-Hop"),
        ("X-Session-Hop", "1"),
        ("Transfer-Encoding", "chunked"),
        ("Content-Length", "12"),
        ("Accept", "application/json"),
    ]
    assert filter_headers(headers, "content-length") == [("Accept", "application/json")]


def test_forwards_to_rewritten_path_with_query(client, upstream):
    resp = client.get("/api/foo/bar?page=2&q=a%20b")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    sent = upstream.last
    assert sent.url.host == "backend.test"
    assert sent.url.port == 20080
    assert sent.url.raw_path == b"/api/foo/bar?page=2&q=a%20b"


def test_mount_root_is_forwarded_as_api_slash(client, upstream):
    client.get("/api")
    assert upstream.last.url.path == "/api/"


def test_percent_encoding_is_preserved(client, upstream):
    client.get("/api/files/a%2Fb")
    assert upstream.last.url.raw_path == b"/api/files/a%2Fb"


def test_host_header_is_overridden_with_target(client, upstream):
    client.get("/api/x", headers={"X-Trace": "abc"})
    sent = upstream.last
    assert sent.headers["host"] == "backend.test:20080"
    assert sent.headers["x-trace"] == "abc"


def test_method_and_body_are_passed_through(client, upstream):
    upstream.reply = lambda r: httpx.Response(201, content=r.content)
    resp = client.post(
        "/api/items",
        content=b'{"name":"widget"}',
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 201
    assert resp.content == b'{"name":"widget"}'
    sent = upstream.last
    assert sent.method == "POST"
    assert sent.headers["content-type"] == "application/json"


@pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
def test_other_methods_are_forwarded(client, upstream, method):
    resp = client.request(method, "/api/items/7")
    assert resp.status_code == 200
    assert upstream.last.method == method
    assert upstream.last.url.path == "/api/items/7"


@pytest.mark.parametrize("method", ["PROPFIND", "TRACE", "LINK", "X-CUSTOM"])
def test_nonstandard_methods_are_forwarded(client, upstream, method):
    resp = client.request(method, "/api/dav")
    assert resp.status_code == 200
    assert len(upstream.requests) == 1
    assert upstream.last.method == method
    assert upstream.last.url.path == "/api/dav"


@pytest.mark.parametrize("method", ["GET", "OPTIONS"])
def test_encoded_slash_after_api_is_not_part_of_the_mount(client, upstream, method):
    resp = client.request(method, "/api%2Ffoo")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == "Not Found"
    assert "20080" not in body["message"]
    assert upstream.requests == []


def test_client_defaults_are_not_added_to_forwarded_headers(client, upstream):
    del client.headers["accept"]
    del client.headers["user-agent"]
    client.get("/api/x")
    sent = upstream.last
    assert "accept" not in sent.headers
    assert "user-agent" not in sent.headers


def test_inbound_accept_and_user_agent_are_forwarded(client, upstream):
    client.get("/api/x", headers={"Accept": "application/json", "User-Agent": "Mozilla/5.0"})
    sent = upstream.last
    assert sent.headers.get_list("accept") == ["application/json"]
    assert sent.headers.get_list("user-agent") == ["Mozilla/5.0"]


def test_upstream_status_is_passed_through(client, upstream):
    upstream.reply = lambda r: httpx.Response(404, json={"detail": "no such item"})
    resp = client.get("/api/items/404")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "no such item"}


def test_upstream_cors_headers_are_replaced_for_allowed_origin(client, upstream):
    upstream.reply = lambda r: httpx.Response(
        200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Max-Age": "86400",
            "X-Upstream": "yes",
        },
        json={},
    )
    resp = client.get("/api/x", headers={"Origin": "http://127.0.0.1:16001"})
    assert resp.headers.get_list("access-control-allow-origin") == ["http://127.0.0.1:16001"]
    assert "access-control-max-age" not in resp.headers
    assert resp.headers["access-control-allow-credentials"] == "true"
    assert resp.headers["x-upstream"] == "yes"


def test_upstream_cors_headers_are_removed_for_disallowed_origin(client, upstream):
    upstream.reply = lambda r: httpx.Response(
        200,
        headers={"Access-Control-Allow-Origin": "*", "Access-Control-Max-Age": "86400"},
        json={},
    )
    resp = client.get("/api/x", headers={"Origin": "http://evil.example"})
    assert resp.status_code == 200
    assert not [h for h in resp.headers if h.lower().startswith("access-control-")]
    # the request itself still reaches the backend
    assert upstream.last.headers["origin"] == "http://evil.example"


def test_missing_origin_gets_default_cors_origin(client):
    resp = client.get("/api/x")
    assert resp.headers["access-control-allow-origin"] == "http://localhost:16001"


def test_repeated_upstream_headers_are_kept(client, upstream):
    upstream.reply = lambda r: httpx.Response(
        200,
        headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
        content=b"",
    )
    resp = client.get("/api/login")
    assert resp.headers.get_list("set-cookie") == ["a=1", "b=2"]


def test_compressed_body_is_relayed_decoded(client, upstream):
    payload = gzip.compress(b"hello world")
    upstream.reply = lambda r: httpx.Response(
        200, headers={"Content-Encoding": "gzip"}, content=payload
    )
    resp = client.get("/api/blob", headers={"Accept-Encoding": "br"})
    assert "content-encoding" not in resp.headers
    assert resp.content == b"hello world"
    assert upstream.last.headers["accept-encoding"] != "br"


def test_connection_refused_returns_proxy_error(client, upstream):
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    upstream.reply = refuse
    resp = client.get("/api/x")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Proxy Error"
    assert body["message"] == "Unable to connect to backend server"
    assert set(body) == {"error", "message", "timestamp"}


def test_upstream_read_timeout_returns_proxy_error(client, upstream):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    upstream.reply = slow
    resp = client.get("/api/x")
    assert resp.status_code == 500
    assert resp.json()["error"] == "Proxy Error"


def test_overall_timeout_abandons_slow_upstream():
    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    settings = GatewaySettings(proxy_target=TARGET, proxy_timeout=0.1)
    app = create_app(settings=settings, transport=httpx.MockTransport(hang))
    with TestClient(app) as client:
        resp = client.get("/api/slow")
    assert resp.status_code == 500
    assert resp.json()["error"] == "Proxy Error"


def test_target_base_path_is_prefixed(upstream):
    settings = GatewaySettings(proxy_target="http://backend.test:20080/v2/")
    app = create_app(settings=settings, transport=httpx.MockTransport(upstream))
    with TestClient(app) as client:
        client.get("/api/users")
    assert upstream.last.url.path == "/v2/api/users"


class TestProxyHandlerLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, settings):
        handler = ProxyHandler(settings, transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        await handler.start()
        first = handler._http_client
        await handler.start()
        assert handler._http_client is first
        await handler.stop()
        await handler.stop()
        assert handler._http_client is None
