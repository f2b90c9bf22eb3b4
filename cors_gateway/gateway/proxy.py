"""
Proxy handler forwarding API requests to the upstream backend.
"""

import asyncio
import logging
import time
from typing import List, Optional, Tuple

import httpx
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, Response

from .cors import rewrite_response_headers
from .models import ErrorEnvelope, UpstreamResponse
from ..config.service import GatewaySettings
from ..monitoring.metrics import proxy_errors_total, proxy_requests_total, upstream_latency

logger = logging.getLogger(__name__)

API_PREFIX = "/api"

# RFC 7230 section 6.1
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def rewrite_path(path: str) -> str:
    """Replace the leading ``/`` of a mount-relative path with ``/api/``."""
    if path.startswith("/"):
        return API_PREFIX + "/" + path[1:]
    return path


def raw_request_path(request: Request) -> str:
    raw = request.scope.get("raw_path")
    return raw.decode("latin-1").split("?", 1)[0] if raw else request.url.path


def in_api_mount(request: Request) -> bool:
    """True when the undecoded path is ``/api`` or lies below ``/api/``.

    Routing matches on the decoded path, so ``/api%2Ffoo`` reaches the
    gateway routes but is not part of the mount.
    """
    path = raw_request_path(request)
    return path == API_PREFIX or path.startswith(API_PREFIX + "/")


def mount_relative_path(request: Request) -> str:
    """Path below the ``/api`` mount point, percent-encoding preserved."""
    if not in_api_mount(request):
        raise HTTPException(status_code=404)
    return raw_request_path(request)[len(API_PREFIX):] or "/"


def filter_headers(headers: List[Tuple[str, str]], *drop: str) -> List[Tuple[str, str]]:
    """Remove hop-by-hop headers, including any listed in ``Connection``."""
    excluded = set(HOP_BY_HOP_HEADERS)
    excluded.update(d.lower() for d in drop)
    for name, value in headers:
        if name.lower() == "connection":
            excluded.update(t.strip().lower() for t in value.split(",") if t.strip())
    return [(n, v) for n, v in headers if n.lower() not in excluded]


class ProxyHandler:
    """Forwards requests to the single configured upstream."""

    def __init__(
        self,
        settings: GatewaySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport
        self._target = httpx.URL(settings.proxy_target)
        self._http_client: Optional[httpx.AsyncClient] = None

    async def start(self):
        """Start the proxy handler."""
        if self._http_client is not None:
            return
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.proxy_timeout),
            limits=httpx.Limits(
                max_keepalive_connections=self.settings.max_keepalive_connections,
                max_connections=self.settings.max_connections,
            ),
            transport=self._transport,
            follow_redirects=False,
        )
        # Only the inbound request decides Accept and User-Agent.
        for name in ("accept", "user-agent"):
            self._http_client.headers.pop(name, None)
        logger.info("Proxy handler started, target %s", self.settings.proxy_target)

    async def stop(self):
        """Stop the proxy handler."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Proxy handler stopped")

    def upstream_path(self, request: Request) -> str:
        path = rewrite_path(mount_relative_path(request))
        query = request.scope.get("query_string", b"")
        if query:
            path = f"{path}?{query.decode('latin-1')}"
        return path

    async def handle_request(self, request: Request) -> Response:
        """Forward ``request`` and return the client-facing response.

        Upstream connection failures and timeouts become a 500 Proxy Error
        envelope; nothing is retried.
        """
        origin = request.headers.get("origin")
        try:
            upstream = await self._make_http_request(request)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            reason = "timeout" if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError)) else "connect"
            proxy_errors_total.labels(reason=reason).inc()
            logger.error("Proxy Error for %s: %s", request.url.path, str(e) or type(e).__name__)
            envelope = ErrorEnvelope(
                error="Proxy Error",
                message="Unable to connect to backend server",
            )
            return JSONResponse(status_code=500, content=envelope.model_dump())

        proxy_requests_total.labels(
            method=request.method, status=str(upstream.status_code)
        ).inc()
        logger.debug(
            "Upstream answered %s %s with %s in %dms",
            request.method,
            upstream.upstream_path,
            upstream.status_code,
            upstream.response_time_ms,
        )

        response = Response(content=upstream.body, status_code=upstream.status_code)
        # httpx has already decoded the body.
        upstream_headers = filter_headers(upstream.headers, "content-length", "content-encoding")
        for name, value in rewrite_response_headers(upstream_headers, origin, self.settings):
            response.headers.append(name, value)
        if request.method == "HEAD":
            for name, value in upstream.headers:
                if name.lower() == "content-length":
                    response.headers["content-length"] = value
                    break
        return response

    async def _make_http_request(self, request: Request) -> UpstreamResponse:
        """Make the actual HTTP request."""
        if not self._http_client:
            await self.start()

        path = self.upstream_path(request)
        url = f"{self.settings.proxy_target}{path}"
        raw_headers = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw]
        # accept-encoding is left to httpx so it only asks for codings it can decode.
        headers = filter_headers(raw_headers, "host", "content-length", "accept-encoding")
        headers.append(("host", self._target.netloc.decode("ascii")))
        body = await request.body()

        logger.info("Proxying %s %s -> %s", request.method, request.url.path, path)

        start_time = time.time()
        upstream = await asyncio.wait_for(
            self._send(request.method, url, path, headers, body),
            timeout=self.settings.proxy_timeout,
        )
        elapsed = time.time() - start_time
        upstream_latency.observe(elapsed)
        upstream.response_time_ms = int(elapsed * 1000)
        return upstream

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        headers: List[Tuple[str, str]],
        body: bytes,
    ) -> UpstreamResponse:
        assert self._http_client is not None
        outgoing = self._http_client.build_request(method, url, headers=headers, content=body)
        response = await self._http_client.send(outgoing)
        return UpstreamResponse(
            status_code=response.status_code,
            headers=list(response.headers.multi_items()),
            body=response.content,
            upstream_path=path,
        )
