"""
Gateway forwarding browser API calls to the upstream backend.

This module provides:
- Origin allow-list validation
- Preflight handling without an upstream round trip
- Request forwarding with path rewriting
- Replacement of upstream CORS headers
"""

from .cors import is_origin_allowed, build_cors_headers, rewrite_response_headers
from .models import ErrorEnvelope, HealthStatus, UpstreamResponse
from .proxy import ProxyHandler, rewrite_path
from .routes import gateway_router

__all__ = [
    "is_origin_allowed",
    "build_cors_headers",
    "rewrite_response_headers",
    "ErrorEnvelope",
    "HealthStatus",
    "UpstreamResponse",
    "ProxyHandler",
    "rewrite_path",
    "gateway_router",
]
