"""
Routes mounted under ``/api``: preflight interception and forwarding.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from .cors import build_cors_headers, is_origin_allowed
from .proxy import in_api_mount
from ..config.service import GatewaySettings
from ..monitoring.metrics import preflight_total

logger = logging.getLogger(__name__)

gateway_router = APIRouter()


def handle_preflight(request: Request, settings: GatewaySettings) -> Response:
    """Answer an OPTIONS request locally without contacting the upstream.

    The status is always 200; a disallowed origin just gets no CORS headers.
    """
    origin = request.headers.get("origin")
    response = Response(status_code=200)
    allowed = is_origin_allowed(origin, settings.allowed_origins)
    if allowed:
        for name, value in build_cors_headers(origin, settings).items():
            response.headers[name] = value
        logger.info("Handled OPTIONS preflight for: %s", origin or "default")
    preflight_total.labels(allowed=str(allowed).lower()).inc()
    return response


async def api_gateway(request: Request):
    if not in_api_mount(request):
        raise HTTPException(status_code=404)
    if request.method == "OPTIONS":
        return handle_preflight(request, request.app.state.settings)
    return await request.app.state.proxy_handler.handle_request(request)


# No method list: any verb, standard or not, matches.
gateway_router.add_route("/api", api_gateway, include_in_schema=False)
gateway_router.add_route("/api/{path:path}", api_gateway, include_in_schema=False)
