"""
tests/conftest.py -- Shared test fixtures for keyward unit and integration tests.

This module provides:
  - FakeClock: injectable Clock that only moves when a test advances it
  - make_settings(): Settings with a fixed SECRET_KEY and fast hashing
  - unit fixtures: clock, store, keystore, tokens, rotator, sessions, user
  - make_client(): TestClient over create_app() with a prebuilt AuthRuntime
  - csrf_headers(): fetch a CSRF token and return the echo header

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
TestClient because it runs route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Unit fixtures run on one thread, so plain :memory: is enough there.

The DEBUG env var must be set before any keyward import so Settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so Settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.keystore import KeystoreManager
from auth.models import User
from auth.refresh import RefreshTokenRotator
from auth.runtime import AuthRuntime
from auth.sessions import SessionManager
from auth.store import SqlAuthStore
from auth.tokens import JwtTokenService
from core.config import Settings

TEST_SECRET = "keyward-test-secret-0123456789abcdef0123456789abcdef"
START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that returns a fixed time until advance() is called."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def make_settings(**overrides) -> Settings:
    """Settings for tests: fixed secret, in-memory DB, bcrypt cost 4, no rate limits."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": "sqlite:///:memory:",
        "keystore_path": "",
        "bcrypt_rounds": 4,
        "rate_limit_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[SqlAuthStore, None, None]:
    s = SqlAuthStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def keystore(clock: FakeClock) -> KeystoreManager:
    ks = KeystoreManager("ES256", clock=clock)
    ks.initialize()
    return ks


@pytest.fixture
def tokens(keystore: KeystoreManager, store: SqlAuthStore, clock: FakeClock) -> JwtTokenService:
    return JwtTokenService(
        keystore,
        store,
        secret_key=TEST_SECRET,
        issuer="keyward",
        audience="keyward",
        access_ttl_seconds=600,
        refresh_ttl_seconds=30 * 86400,
        clock=clock,
    )


@pytest.fixture
def rotator(store: SqlAuthStore, tokens: JwtTokenService, clock: FakeClock) -> RefreshTokenRotator:
    return RefreshTokenRotator(store, tokens, clock=clock)


@pytest.fixture
def sessions(store: SqlAuthStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, ttl_minutes=60, rolling=False, clock=clock)


@pytest.fixture
def user(store: SqlAuthStore) -> User:
    return store.create_user(User(email="alice@example.com", name="Alice"))


# ---------------------------------------------------------------------------
# Integration helpers
# ---------------------------------------------------------------------------


@contextmanager
def make_client(
    db_suffix: str,
    *,
    clock: FakeClock | None = None,
    providers: dict | None = None,
    provider_client=None,
    notifier=None,
    **overrides,
) -> Generator[tuple[TestClient, AuthRuntime], None, None]:
    """Yield (client, runtime) for one isolated app instance.

    The runtime is built before the client starts so tests can seed users
    and inspect storage directly. create_app() leaves a runtime it did not
    build open; it is closed here.
    """
    db_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    settings = make_settings(database_url=db_url, **overrides)
    clock = clock or FakeClock(datetime.now(timezone.utc))
    runtime = AuthRuntime.from_settings(
        settings,
        store=SqlAuthStore(db_url, clock=clock),
        providers=providers if providers is not None else {},
        provider_client=provider_client,
        notifier=notifier,
        clock=clock,
    )
    app = create_app(settings, runtime=runtime)
    try:
        with TestClient(app, raise_server_exceptions=True) as client:
            yield client, runtime
    finally:
        runtime.close()


def csrf_headers(client: TestClient) -> dict[str, str]:
    """Fetch a CSRF token (cookie lands in the client jar) and return the echo header."""
    resp = client.get("/api/v1/auth/csrf")
    assert resp.status_code == 200
    return {"X-CSRF-Token": resp.json()["csrf_token"]}
