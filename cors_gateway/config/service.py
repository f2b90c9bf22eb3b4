"""
Gateway configuration loaded from the process environment.

Settings are read once at startup into an immutable model and handed to the
application factory; request handlers only ever read them.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import FrozenSet, Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_PROXY_TARGET = "http://47.106.218.81:20080"
DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:16001",
    "http://localhost:16000",
    "http://127.0.0.1:16001",
    "http://127.0.0.1:16000",
)
DEFAULT_ORIGIN = "http://localhost:16001"

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = (
    "Origin, X-Requested-With, Content-Type, Accept, Authorization, "
    "Cache-Control, Pragma"
)


def _has_scheme_and_host(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class GatewaySettings(BaseModel):
    """Immutable gateway configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    proxy_target: str = DEFAULT_PROXY_TARGET
    allowed_origins: FrozenSet[str] = Field(
        default_factory=lambda: frozenset(DEFAULT_ALLOWED_ORIGINS)
    )
    default_origin: str = DEFAULT_ORIGIN
    allow_methods: str = ALLOW_METHODS
    allow_headers: str = ALLOW_HEADERS
    proxy_timeout: float = 30.0
    max_connections: int = 100
    max_keepalive_connections: int = 20
    expose_error_details: bool = True
    metrics_enabled: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        frozen = True

    @field_validator("proxy_target")
    @classmethod
    def _check_target(cls, v: str) -> str:
        if not _has_scheme_and_host(v):
            raise ValueError(f"proxy_target must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("allowed_origins")
    @classmethod
    def _check_origins(cls, v: FrozenSet[str]) -> FrozenSet[str]:
        for origin in v:
            if not _has_scheme_and_host(origin):
                raise ValueError(f"allowed origin must include a scheme: {origin!r}")
        return v

    @field_validator("port")
    @classmethod
    def _check_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        env = os.environ if environ is None else environ

        def get_str(key: str, default: str) -> str:
            v = env.get(key)
            return default if v is None or v.strip() == "" else v.strip()

        def get_int(key: str, default: int) -> int:
            try:
                return int(env.get(key, ""))
            except ValueError:
                return default

        def get_float(key: str, default: float) -> float:
            try:
                return float(env.get(key, ""))
            except ValueError:
                return default

        def get_bool(key: str, default: bool) -> bool:
            v = env.get(key)
            return default if v is None else v.strip().lower() in ("1", "true", "yes", "on")

        raw_origins = env.get("ALLOWED_ORIGINS")
        if raw_origins is None:
            origins = frozenset(DEFAULT_ALLOWED_ORIGINS)
        else:
            origins = frozenset(o.strip() for o in raw_origins.split(",") if o.strip())

        return cls(
            host=get_str("HOST", "127.0.0.1"),
            port=get_int("PORT", 3001),
            proxy_target=get_str("PROXY_TARGET", DEFAULT_PROXY_TARGET),
            allowed_origins=origins,
            default_origin=get_str("DEFAULT_ORIGIN", DEFAULT_ORIGIN),
            proxy_timeout=get_float("PROXY_TIMEOUT", 30.0),
            max_connections=get_int("MAX_CONNECTIONS", 100),
            max_keepalive_connections=get_int("MAX_KEEPALIVE_CONNECTIONS", 20),
            expose_error_details=get_bool("EXPOSE_ERROR_DETAILS", True),
            metrics_enabled=get_bool("METRICS_ENABLED", False),
            environment=get_str("ENVIRONMENT", "development"),
            log_level=get_str("LOG_LEVEL", "INFO").upper(),
        )


@functools.lru_cache(maxsize=1)
def get_settings() -> GatewaySettings:
    """Process-wide settings, built from the environment on first use."""
    settings = GatewaySettings.from_env()
    logger.debug("Loaded settings: %s", settings.model_dump())
    return settings
