from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from http import HTTPStatus
import contextvars
import logging
import os
import uuid
from typing import Optional

import httpx

from .config.service import GatewaySettings, get_settings
from .gateway.models import ErrorEnvelope, HealthStatus
from .gateway.proxy import ProxyHandler
from .gateway.routes import gateway_router
from .monitoring.metrics import metrics_router

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default="system"
)


class AddRequestIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - request_id=%(request_id)s - %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(AddRequestIdFilter())
logger = logging.getLogger("cors_gateway")


def _route_url(request: Request) -> str:
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def create_app(
    settings: Optional[GatewaySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway application.

    ``transport`` replaces the network transport of the upstream client,
    which lets tests stand in for the backend.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="CORS Gateway",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.proxy_handler = ProxyHandler(settings, transport=transport)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            logger.info(
                "%s %s - Origin: %s",
                request.method,
                _route_url(request),
                request.headers.get("origin") or "None",
            )
            return await call_next(request)
        finally:
            request_id_var.reset(token)

    @app.api_route("/health", methods=["GET", "HEAD"])
    async def health_check():
        return HealthStatus(proxy_target=settings.proxy_target).model_dump()

    app.include_router(gateway_router)
    if settings.metrics_enabled:
        app.include_router(metrics_router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        # Unknown routes and unsupported methods on known routes both read as missing.
        if exc.status_code in (404, 405):
            envelope = ErrorEnvelope(
                error="Not Found",
                message=f"Route {_route_url(request)} not found",
            )
            return JSONResponse(status_code=404, content=envelope.model_dump())
        try:
            phrase = HTTPStatus(exc.status_code).phrase
        except ValueError:
            phrase = "Error"
        envelope = ErrorEnvelope(error=phrase, message=str(exc.detail))
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope.model_dump(),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # Runs outside log_requests, after the context variable was reset.
        request_id = getattr(request.state, "request_id", request_id_var.get())
        logger.error(
            "Server Error: %s", exc, exc_info=exc, extra={"request_id": request_id}
        )
        message = str(exc) if settings.expose_error_details else "An unexpected error occurred"
        envelope = ErrorEnvelope(error="Internal Server Error", message=message)
        return JSONResponse(status_code=500, content=envelope.model_dump())

    @app.on_event("startup")
    async def startup_event():
        await app.state.proxy_handler.start()
        logger.info("CORS gateway started")
        logger.info("Listening on: http://%s:%s", settings.host, settings.port)
        logger.info("Proxy target: %s", settings.proxy_target)
        logger.info("Health check: http://%s:%s/health", settings.host, settings.port)
        logger.info("Allowed origins: %s", ", ".join(sorted(settings.allowed_origins)))
        logger.info("Environment: %s", settings.environment)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("CORS gateway shutting down")
        await app.state.proxy_handler.stop()

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
