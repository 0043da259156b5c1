"""
tests/conftest.py -- Shared test fixtures for TokenGate.

This module provides:
  - ManualClock: a clock tests move by hand, so expiry needs no sleeping
  - unit fixtures: store, registry, codec, token_service, account_service
  - _patch_lifespan(): wires test backends into app.state, bypassing real startup
  - api_client: TestClient over the real app with isolated backends

Design: SQLite stores live in tmp_path files rather than :memory:. TestClient
runs route handlers in a thread pool and the rotation tests use real threads;
a plain :memory: database is per-connection and would present a blank schema
to each worker thread.

The DEBUG env var must be set before any import that reads settings so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core/api import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PASSWORD_RESET_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PASSWORD_RESET_MIN_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from auth.accounts import AccountService
from auth.codec import TokenCodec
from auth.models import Account
from auth.passwords import hash_password
from auth.policy import SessionPolicy
from auth.service import TokenService
from auth.store import AccountStore
from core.config import get_settings
from registry.memory import MemoryRevocationRegistry

SECRET = "test-secret-key-that-is-long-enough-0123456789"
START = 1_700_000_000
PASSWORD = "correct horse battery"


class ManualClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: int = START) -> None:
        self.value = start

    def now(self) -> int:
        return self.value

    def advance(self, seconds: int) -> None:
        self.value += seconds


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(tmp_path) -> Generator[AccountStore, None, None]:
    s = AccountStore(f"sqlite:///{tmp_path / 'accounts.db'}", retry_backoff_seconds=0)
    yield s
    s.close()


@pytest.fixture
def registry(clock) -> MemoryRevocationRegistry:
    return MemoryRevocationRegistry(clock=clock)


@pytest.fixture
def policy() -> SessionPolicy:
    return SessionPolicy(access_token_ttl=900, refresh_token_ttl=7 * 24 * 3600)


@pytest.fixture
def codec(clock, policy) -> TokenCodec:
    return TokenCodec(SECRET, clock=clock, leeway_seconds=policy.clock_skew_seconds)


@pytest.fixture
def token_service(codec, registry, store, policy, clock) -> TokenService:
    return TokenService(codec, registry, store, policy, clock)


@pytest.fixture
def account_service(store, token_service, clock) -> AccountService:
    return AccountService(store, token_service, bcrypt_rounds=4, clock=clock)


@pytest.fixture
def account(store) -> Account:
    """An active account with PASSWORD, already persisted."""
    account_id = store.create_account(Account(email="alice@example.com", password_digest=hash_password(PASSWORD, 4)))
    return store.get_account(account_id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, registry: MemoryRevocationRegistry):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, get_settings(), store, registry)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_backends(tmp_path) -> Generator[tuple[AccountStore, MemoryRevocationRegistry], None, None]:
    s = AccountStore(f"sqlite:///{tmp_path / 'api_accounts.db'}", retry_backoff_seconds=0)
    yield s, MemoryRevocationRegistry()
    s.close()


@pytest.fixture
def api_client(api_backends) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a patched lifespan.

    base_url must be localhost: TrustedHostMiddleware rejects the default
    "testserver" host.
    """
    store, registry = api_backends
    app.router.lifespan_context = _patch_lifespan(store, registry)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client


def register(client: TestClient, email: str = "bob@example.com", password: str = PASSWORD) -> dict:
    """Register through the API and return the token pair body."""
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
