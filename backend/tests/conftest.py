"""Pytest configuration and fixtures."""
from __future__ import annotations

import datetime
import json
import os
from collections.abc import Callable
from typing import Any

# Settings are read at import time; point them at SQLite before anything loads.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from taskflow_gateway.core.database import Base
from taskflow_gateway.gateway.request_gateway import RequestGateway
from taskflow_gateway.main import create_app
from taskflow_gateway.services.rate_limiter import RateLimiter
from taskflow_gateway.services.resource_handler import HandlerResult
from taskflow_gateway.services.token_store import TokenStore
from taskflow_gateway.services.webhook_dispatcher import WebhookDispatcher

import taskflow_gateway.models.auth_token  # noqa: F401
import taskflow_gateway.models.webhook  # noqa: F401


class FakeClock:
    """Controllable wall clock (datetime) and monotonic clock (float)."""

    def __init__(self) -> None:
        self.now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        self.mono = 1_000.0

    def __call__(self) -> datetime.datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)
        self.mono += seconds


class FakeResourceHandler:
    """Stands in for the upstream CRUD service."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.routes: dict[tuple[str, str], HandlerResult | Callable[..., HandlerResult]] = {}
        self.users = {"alice": "wonderland", "bob": "builder"}

    def respond(self, method: str, path: str, status: int = 200, body: Any = None) -> None:
        self.routes[(method, path)] = json_result(status, body)

    async def handle(
        self,
        method: str,
        path: str,
        user_id: str | None,
        body: bytes,
        *,
        content_type: str | None = None,
    ) -> HandlerResult:
        self.calls.append({"method": method, "path": path, "user_id": user_id, "body": body})

        if (method, path) == ("POST", "/auth/login") and ("POST", path) not in self.routes:
            creds = json.loads(body or b"{}")
            if self.users.get(creds.get("username")) == creds.get("password"):
                return json_result(200, {"user_id": creds["username"]})
            return json_result(401, {"error": {"code": "bad_credentials", "message": "nope", "details": {}}})

        route = self.routes.get((method, path.split("?", 1)[0]))
        if route is None:
            return json_result(200, {"method": method, "path": path})
        if callable(route):
            return route(method, path, user_id, body)
        return route


def json_result(status: int, body: Any) -> HandlerResult:
    return HandlerResult(
        status_code=status,
        body=b"" if body is None else json.dumps(body).encode(),
        headers={"content-type": "application/json"} if body is not None else {},
    )


class WebhookReceiver:
    """Records outbound webhook POSTs; status codes are scripted per call."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.raise_timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("simulated timeout", request=request)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(status, text="ok" if status < 300 else "nope")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def token_store(session_factory, clock) -> TokenStore:
    return TokenStore(session_factory, clock=clock)


@pytest.fixture
def resource_handler() -> FakeResourceHandler:
    return FakeResourceHandler()


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest.fixture
async def dispatcher(session_factory, receiver, clock) -> WebhookDispatcher:
    http = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    yield WebhookDispatcher(session_factory, http_client=http, clock=clock)
    await http.aclose()


@pytest.fixture
def gateway(token_store, resource_handler, dispatcher, clock) -> RequestGateway:
    return RequestGateway(
        token_store=token_store,
        resource_handler=resource_handler,
        publisher=dispatcher,
        ip_limiter=RateLimiter("ip", clock=clock.monotonic),
        token_limiter=RateLimiter("token", clock=clock.monotonic),
        ip_limit=100,
        ip_window_seconds=60,
        token_limit=1000,
        token_window_seconds=3600,
        public_paths=["/auth/login"],
    )


@pytest.fixture
def app(session_factory, dispatcher, gateway):
    return create_app(session_factory=session_factory, dispatcher=dispatcher, gateway=gateway)


@pytest.fixture
async def client(app) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
async def alice_token(token_store) -> str:
    return (await token_store.issue("alice")).token


@pytest.fixture
def auth_headers(alice_token) -> dict[str, str]:
    return {"Authorization": f"Bearer {alice_token}"}
