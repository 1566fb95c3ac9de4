"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - engine / user_store / token_store: a fresh in-memory SQLite schema per test
  - clock: a controllable UTC clock shared by the stores and the service
  - service: an AuthService wired to the above with a fixed test secret
  - api_client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient fixture because it runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AuthService
from auth.store import TokenStore, UserStore, dispose_engine, open_engine

TEST_SECRET = "test-signing-key-0123456789abcdef0123456789abcdef"
ACCESS_LIFETIME = timedelta(minutes=15)
REFRESH_LIFETIME = timedelta(days=7)
# Whole seconds: NumericDate claims have no sub-second part.
T0 = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable UTC clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit fixtures -- one isolated in-memory DB per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    eng = open_engine("sqlite:///:memory:")
    yield eng
    dispose_engine(eng)


@pytest.fixture
def user_store(engine, clock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture
def token_store(engine, clock) -> TokenStore:
    return TokenStore(engine, clock=clock)


@pytest.fixture
def service(user_store, token_store, clock) -> AuthService:
    return AuthService(
        user_store,
        token_store,
        secret_key=TEST_SECRET,
        access_token_lifetime=ACCESS_LIFETIME,
        refresh_token_lifetime=REFRESH_LIFETIME,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Integration fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and service into app.state so TestClient routes see
    an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = auth_service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService, object], None, None]:
    """Yield (client, service, engine) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The service
    runs on the real clock.
    """
    db_name = f"test_auth_{request.module.__name__.rsplit('.', 1)[-1]}"
    eng = open_engine(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    auth_service = AuthService(
        UserStore(eng),
        TokenStore(eng),
        secret_key=TEST_SECRET,
        access_token_lifetime=ACCESS_LIFETIME,
        refresh_token_lifetime=REFRESH_LIFETIME,
    )

    app.router.lifespan_context = _patch_lifespan(eng, auth_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, auth_service, eng

    dispose_engine(eng)
