"""
tests/conftest.py -- Shared test fixtures for FlexFlow tests.

This module provides:
  - make_user_store(): isolated named shared-memory SQLite UserStore
  - issuer: TokenIssuer with a fixed test secret
  - api_client: TestClient wired to a seeded in-memory store, plus handles on
    the store and blacklist so tests can arrange state directly
  - make_api_context: the same, as a context manager taking a custom blacklist

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG must be set before any auth/core import so get_settings() auto-generates
BEARER_SECRET instead of raising. LOGIN_RATE_LIMIT is raised so the login
tests in one module do not trip the 10/minute production limit.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from datetime import timedelta

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("BLACKLIST_BACKEND", "memory")

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_auth
from auth.blacklist import MemoryTokenBlacklist, TokenBlacklist
from auth.identity import StoreIdentityProvider, seed_admin
from auth.models import User
from auth.store import UserStore
from auth.tokens import BearerConfig, TokenIssuer, hash_password
from core.config import get_settings

TEST_SECRET = "test-secret-0123456789abcdef0123456789"
ADMIN_EMAIL = "admin@flexflow.test"
TFA_SECRET = pyotp.random_base32()

_db_counter = itertools.count()


def make_user_store(name: str = "auth") -> UserStore:
    """Create an isolated UserStore on a uniquely named shared-memory SQLite DB."""
    url = f"sqlite:///file:test_{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url)


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store("unit")
    yield store
    store.close()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(BearerConfig(secret=TEST_SECRET, audience="flexflow-tests", issuer="flexflow-tests"))


@dataclass
class ApiContext:
    client: TestClient
    store: UserStore
    blacklist: TokenBlacklist

    def login(self, username: str = "admin", password: str = "admin", **extra) -> str:
        resp = self.client.post("/api/auth/login", json={"username": username, "password": password, **extra})
        assert resp.status_code == 200, f"login failed: {resp.status_code} {resp.text}"
        return resp.json()["token"]


def _seed_test_users(store: UserStore) -> None:
    """Admin (id 1) plus an unconfirmed account and a two-factor account."""
    seed_admin(store, ADMIN_EMAIL)
    store.create_user(
        User(
            username="carol",
            email="carol@flexflow.test",
            display_name="Carol",
            hashed_password=hash_password("carolpass"),
            email_confirmed=False,
            roles=["User"],
        )
    )
    store.create_user(
        User(
            username="tfa",
            email="tfa@flexflow.test",
            display_name="Two Factor",
            hashed_password=hash_password("tfapass"),
            email_confirmed=True,
            roles=["User"],
        )
    )
    identity = StoreIdentityProvider(store)
    identity.enable_two_factor(identity.find_user_by_name("tfa"), secret=TFA_SECRET)


def _patch_lifespan(store: UserStore, blacklist: TokenBlacklist):
    """Replace the real lifespan so routes see the test store and blacklist.

    purge_task is a long-sleeping real Task because shutdown calls .cancel().
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_auth(app, get_settings(), store, blacklist=blacklist)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@contextmanager
def api_context(blacklist: TokenBlacklist | None = None) -> Generator[ApiContext, None, None]:
    """Run the app against a freshly seeded store and the given (or a new in-memory) blacklist."""
    store = make_user_store("api")
    _seed_test_users(store)
    if blacklist is None:
        blacklist = MemoryTokenBlacklist(ttl=timedelta(minutes=get_settings().bearer_lifetime_minutes))

    app.router.lifespan_context = _patch_lifespan(store, blacklist)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, store=store, blacklist=blacklist)

    store.close()


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for integration tests through the full ASGI stack."""
    with api_context() as ctx:
        yield ctx


@pytest.fixture
def make_api_context():
    """Expose api_context() to tests that need their own blacklist or a short-lived client."""
    return api_context
