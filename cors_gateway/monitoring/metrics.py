from prometheus_client import CollectorRegistry, Histogram, Counter
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

registry = CollectorRegistry()

proxy_requests_total = Counter(
    "cors_gateway_proxy_requests_total",
    "Requests forwarded to the upstream, by upstream status",
    ["method", "status"],
    registry=registry,
)

proxy_errors_total = Counter(
    "cors_gateway_proxy_errors_total",
    "Forwarding attempts that produced no upstream response",
    ["reason"],
    registry=registry,
)

preflight_total = Counter(
    "cors_gateway_preflight_total",
    "Preflight requests answered locally",
    ["allowed"],
    registry=registry,
)

upstream_latency = Histogram(
    "cors_gateway_upstream_latency_seconds",
    "Time from sending a request upstream to receiving its full response",
    registry=registry,
)

metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def get_metrics():
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
