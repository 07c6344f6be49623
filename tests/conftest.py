"""
tests/conftest.py -- Shared test fixtures for the admin console test suite.

This module provides:
  - codec: a PasswordCodec with cheap Argon2 parameters so tests run fast
  - store: an isolated AccountStore per test
  - clock: a settable clock for SessionAuthenticator expiry tests
  - make_account: factory that saves an account with a hashed password
  - api_client: TestClient with an admin session for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import ADMIN_ROLE, DEFAULT_ROLE, Account
from auth.passwords import PasswordCodec
from auth.session import SessionAuthenticator
from auth.store import AccountStore
from auth.tokens import create_access_token
from directory.engine import DirectoryQueryEngine

ADMIN_HANDLE = "testadmin"
ADMIN_PASSWORD = "Testpass123"
DEFAULT_PASSWORD = "Passw0rd-x"


def _cheap_codec() -> PasswordCodec:
    return PasswordCodec(time_cost=1, memory_cost=1024, parallelism=1)


def _memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _save_account(
    store: AccountStore,
    codec: PasswordCodec,
    handle: str,
    password: str = DEFAULT_PASSWORD,
    *,
    email: str | None = None,
    roles: set[str] | None = None,
    **fields,
) -> Account:
    salt = codec.generate_salt()
    account = Account(
        handle=handle,
        email=email or f"{handle.lower()}@example.com",
        password_hash=codec.hash(password, salt),
        password_salt=salt,
        roles=roles if roles is not None else {DEFAULT_ROLE},
        **fields,
    )
    store.save(account)
    return account


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- one fresh store per test
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def codec() -> PasswordCodec:
    return _cheap_codec()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    account_store = AccountStore(_memory_url("store"))
    yield account_store
    account_store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_account(store: AccountStore, codec: PasswordCodec) -> Callable[..., Account]:
    """Factory: make_account("alice", password=..., roles={...}, first_name=...)."""

    def _make(handle: str, password: str = DEFAULT_PASSWORD, **kwargs) -> Account:
        return _save_account(store, codec, handle, password, **kwargs)

    return _make


@pytest.fixture
def authenticator(store: AccountStore, codec: PasswordCodec, clock: FakeClock) -> SessionAuthenticator:
    return SessionAuthenticator(
        store,
        codec,
        max_failed_attempts=3,
        lockout_seconds=900,
        session_seconds=3600,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, authenticator: SessionAuthenticator, directory: DirectoryQueryEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test services into app.state so TestClient routes see
    an isolated database. The purge_task is a long-sleeping coroutine (a real
    asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.authenticator = authenticator
        app.state.directory = directory
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The admin
    account is created and logged in before the client starts; token is the
    access token of that live session, for use in Authorization headers.

    base_url is http://localhost because TrustedHostMiddleware rejects the
    TestClient default host.
    """
    codec = _cheap_codec()
    store = AccountStore(_memory_url("api"))
    admin = _save_account(store, codec, ADMIN_HANDLE, ADMIN_PASSWORD, roles={DEFAULT_ROLE, ADMIN_ROLE})
    authenticator = SessionAuthenticator(store, codec, max_failed_attempts=3)
    directory = DirectoryQueryEngine(store, codec)

    session = authenticator.authenticate(ADMIN_HANDLE, ADMIN_PASSWORD).session
    token = create_access_token(session.session_id, session.account_id, session.handle, session.expires_at)

    app.router.lifespan_context = _patch_lifespan(store, authenticator, directory)
    limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, admin.id

    limiter.reset()
    store.close()


@pytest.fixture
def admin_headers(api_client: tuple[TestClient, str, int]) -> dict[str, str]:
    _client, token, _uid = api_client
    return {"Authorization": f"Bearer {token}"}
