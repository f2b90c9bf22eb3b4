"""
Gateway data models.
"""

from datetime import datetime, timezone
from typing import List, Tuple

from pydantic import BaseModel, Field


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    now = datetime.now(tz=timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ErrorEnvelope(BaseModel):
    """JSON body returned for every failure kind."""

    error: str
    message: str
    timestamp: str = Field(default_factory=utc_timestamp)


class HealthStatus(BaseModel):
    """Health check payload."""

    status: str = "healthy"
    timestamp: str = Field(default_factory=utc_timestamp)
    proxy_target: str


class UpstreamResponse(BaseModel):
    """Buffered response received from the upstream backend."""

    status_code: int
    headers: List[Tuple[str, str]] = Field(default_factory=list)
    body: bytes = b""
    upstream_path: str
    response_time_ms: int = 0
