"""
tests/conftest.py -- Shared test fixtures for SessionGate tests.

This module provides:
  - FrozenClock / clock: a manually advanced clock injected into the codec and
    the refresh token store, so expiry cases need no sleeping
  - engine / users / refresh_store / service: the auth core wired to an
    isolated in-memory database per test
  - api_client: TestClient around create_app() using that same service
  - live_issuer: an issuer on the real clock with the test secret, for
    minting tokens the gateway (which always uses the real clock) accepts

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
A fresh uuid per test keeps tests from seeing each other's rows.

The DEBUG env var must be set before any core import so get_settings()
auto-generates JWT_SECRET in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate JWT_SECRET in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import create_app
from auth.anonymous import SharedAnonymousPolicy
from auth.codec import TokenCodec
from auth.refresh_store import RefreshTokenStore
from auth.service import SessionService
from auth.store import UserStore, make_engine
from auth.tokens import AccessTokenIssuer
from core.config import Settings

TEST_SECRET = "test-signing-secret-0123456789abcdef-0123"
ACCESS_TTL = timedelta(minutes=15)
REFRESH_TTL = timedelta(days=7)
BCRYPT_ROUNDS = 4


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def memory_db_url() -> str:
    return f"sqlite:///file:sessiongate_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    # Start at wall-clock time so tokens minted here also pass the gateway.
    return FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        jwt_secret=TEST_SECRET,
        bcrypt_rounds=BCRYPT_ROUNDS,
        rate_limit_enabled=False,
        database_url=memory_db_url(),
    )


@pytest.fixture
def codec(clock: FrozenClock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def issuer(codec: TokenCodec) -> AccessTokenIssuer:
    return AccessTokenIssuer(codec, ACCESS_TTL)


@pytest.fixture
def live_issuer() -> AccessTokenIssuer:
    return AccessTokenIssuer(TokenCodec(TEST_SECRET), ACCESS_TTL)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = make_engine(memory_db_url())
    yield engine
    engine.dispose()


@pytest.fixture
def users(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def refresh_store(engine: Engine, clock: FrozenClock) -> RefreshTokenStore:
    return RefreshTokenStore(engine, REFRESH_TTL, clock=clock)


@pytest.fixture
def service(users: UserStore, refresh_store: RefreshTokenStore, issuer: AccessTokenIssuer) -> SessionService:
    return SessionService(
        users=users,
        refresh_tokens=refresh_store,
        issuer=issuer,
        anonymous_policy=SharedAnonymousPolicy(BCRYPT_ROUNDS),
        bcrypt_rounds=BCRYPT_ROUNDS,
    )


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client(settings: Settings, service: SessionService) -> Generator[TestClient, None, None]:
    """TestClient for the auth service, backed by the per-test SessionService."""
    app = create_app(settings, session_service=service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
