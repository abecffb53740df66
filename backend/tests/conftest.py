"""
Invest Gateway - Test Configuration (conftest.py)
=================================================

What:  Shared pytest fixtures for the whole suite.
How:   Every test builds its own app through `create_app()` with explicit
       settings and a fake data store, so no test touches a real database,
       the process environment, or another test's rate-limit buckets.

Fixture Hierarchy:
    Function-scoped:
    ├── settings:     Test Settings (environment "test", SQLite URL)
    ├── fake_store:   DataStore stand-in with a scriptable probe
    ├── clock:        Manually advanced time source for the rate limiter
    ├── auth_group:   A handler group with a few recorded endpoints
    ├── make_app:     Factory: create_app(settings + overrides)
    └── make_client:  Factory: HTTPX AsyncClient bound to an app
"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from invest_gateway.config import Settings
from invest_gateway.exceptions import (
    Failure,
    FailureKind,
    InvalidTokenError,
    ValidationError,
)
from invest_gateway.handlers import HandlerGroup, RequestContext, Success
from invest_gateway.main import create_app


class FakeStore:
    """
    DataStore stand-in.

    `reachable` decides what ping() answers; `error` makes it raise instead.
    """

    def __init__(self, reachable: bool = True, error: Optional[BaseException] = None):
        self.reachable = reachable
        self.error = error
        self.pings = 0
        self.dispose = AsyncMock()

    async def ping(self) -> bool:
        self.pings += 1
        if self.error is not None:
            raise self.error
        return self.reachable


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        frontend_url="http://localhost:3000",
        rate_limit_window_ms=60_000,
        rate_limit_max_requests=100,
        log_level="WARNING",
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def calls() -> List[RequestContext]:
    """Contexts seen by the auth_group endpoints, in order."""
    return []


@pytest.fixture
def auth_group(calls) -> HandlerGroup:
    """
    A small auth collaborator.

        POST /login    → echoes body, token and client id
        GET  /me       → InvalidToken unless a bearer token is present
        POST /register → ValidationFailed("Email is required") when email missing
        GET  /denied   → returned Failure (not raised)
        GET  /boom     → unexpected RuntimeError
        DELETE /session → 204
    """
    group = HandlerGroup("auth")

    @group.route("POST", "/login")
    async def login(ctx: RequestContext):
        calls.append(ctx)
        return Success(
            {"body": ctx.body, "token": ctx.token, "client": ctx.client_id},
            status_code=201,
        )

    @group.route("GET", "/me")
    async def me(ctx: RequestContext):
        calls.append(ctx)
        if ctx.token is None:
            raise InvalidTokenError()
        ctx = ctx.with_identity({"user_id": 42})
        return {"user_id": ctx.identity["user_id"], "subpath": ctx.subpath}

    @group.route("POST", "/register")
    async def register(ctx: RequestContext):
        calls.append(ctx)
        if not (ctx.body or {}).get("email"):
            raise ValidationError("Email is required")
        return Success({"registered": True}, status_code=201)

    @group.route("GET", "/denied")
    async def denied(ctx: RequestContext):
        calls.append(ctx)
        return Failure(FailureKind.VALIDATION_FAILED, message="Amount must be positive")

    @group.route("GET", "/boom")
    async def boom(ctx: RequestContext):
        calls.append(ctx)
        raise RuntimeError("ledger exploded")

    @group.route("DELETE", "/session")
    async def logout(ctx: RequestContext):
        calls.append(ctx)
        return Success(status_code=204)

    return group


@pytest.fixture
def make_app(settings, fake_store, clock, auth_group):
    """
    Factory for isolated gateway apps.

    Usage:
        app = make_app(rate_limit_max_requests=3)
    """

    def _make(store=None, handler_groups: Optional[Dict[str, HandlerGroup]] = None, **overrides: Any):
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        groups = {"auth": auth_group} if handler_groups is None else handler_groups
        return create_app(
            app_settings,
            store=store or fake_store,
            handler_groups=groups,
            clock=clock,
        )

    return _make


@pytest_asyncio.fixture
async def make_client():
    """
    Factory for HTTPX AsyncClients talking to an app in-process.

    Usage:
        client = await make_client(app, client_ip="203.0.113.9")
    """
    clients: List[AsyncClient] = []

    async def _make(app, client_ip: str = "203.0.113.7") -> AsyncClient:
        transport = ASGITransport(app=app, client=(client_ip, 50000))
        client = AsyncClient(transport=transport, base_url="http://test")
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture
async def client(make_app, make_client) -> AsyncClient:
    return await make_client(make_app())
