"""
Origin validation and CORS header rewriting.

The gateway never trusts CORS headers produced by the upstream. They are
removed from every proxied response and replaced by a fixed set, but only
when the requesting origin is allowed. A disallowed origin simply gets no
CORS headers, which makes the browser refuse the response.
"""

import logging
from typing import AbstractSet, Dict, Iterable, List, Optional, Tuple

from ..config.service import GatewaySettings

logger = logging.getLogger(__name__)

CORS_HEADER_PREFIX = "access-control-"


def is_origin_allowed(origin: Optional[str], allowed_origins: AbstractSet[str]) -> bool:
    """Return True for a missing origin or an exact allow-list match."""
    if not origin:
        return True
    if origin in allowed_origins:
        return True
    logger.warning("CORS blocked origin: %s", origin)
    return False


def build_cors_headers(origin: Optional[str], settings: GatewaySettings) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin or settings.default_origin,
        "Access-Control-Allow-Methods": settings.allow_methods,
        "Access-Control-Allow-Headers": settings.allow_headers,
        "Access-Control-Allow-Credentials": "true",
    }


def strip_cors_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Drop every header whose name starts with ``access-control-``."""
    kept: List[Tuple[str, str]] = []
    for name, value in headers:
        if name.lower().startswith(CORS_HEADER_PREFIX):
            logger.debug("Removed upstream CORS header: %s", name)
            continue
        kept.append((name, value))
    return kept


def rewrite_response_headers(
    headers: Iterable[Tuple[str, str]],
    origin: Optional[str],
    settings: GatewaySettings,
) -> List[Tuple[str, str]]:
    """Replace upstream CORS headers with the gateway's own set."""
    rewritten = strip_cors_headers(headers)
    if is_origin_allowed(origin, settings.allowed_origins):
        rewritten.extend(build_cors_headers(origin, settings).items())
        logger.debug("Set CORS headers for origin: %s", origin or "default")
    return rewritten
