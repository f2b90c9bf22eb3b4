from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from cors_gateway.config.service import GatewaySettings
from cors_gateway.main import create_app

TARGET = "http://backend.test:20080"


class Upstream:
    """Records requests reaching the fake backend and answers with ``reply``."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.reply: Callable[[httpx.Request], httpx.Response] = lambda r: httpx.Response(
            200, json={"ok": True}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    @property
    def last(self) -> httpx.Request:
        assert self.requests, "upstream was never called"
        return self.requests[-1]


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def settings():
    return GatewaySettings(proxy_target=TARGET)


@pytest.fixture
def client(settings, upstream):
    app = create_app(settings=settings, transport=httpx.MockTransport(upstream))
    with TestClient(app) as c:
        yield c
