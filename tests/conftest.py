"""
tests/conftest.py -- Shared test fixtures for SheetFlow IAM tests.

This module provides:
  - FakeClock: a settable UTC clock injected into AuthService so lockout
    windows, session expiry and TOTP steps are tested without sleeping
  - store / issuer / service: a fresh file-backed SQLite AuthStore per test
  - make_account: inserts an account directly (bypasses registration rules)
  - outbox: password reset tokens captured instead of being logged
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient with an ADMIN token for API integration tests

Design: unit tests use a file database under tmp_path rather than :memory:
because concurrency tests hit the store from several threads, and each
pysqlite connection to :memory: would see its own blank schema.

Environment variables must be set before any auth/core import so the
lru_cached get_settings() sees them: DEBUG auto-generates SECRET_KEY,
BCRYPT_ROUNDS=4 keeps hashing fast, and rate limits are switched off because
every TestClient request comes from the same address.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account, Role
from auth.passwords import hash_password
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenIssuer

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
PASSWORD = "Str0ng!Pass1"


class FakeClock:
    """Callable clock returning a fixed aware UTC datetime until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit fixtures -- one isolated database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> Generator[AuthStore, None, None]:
    s = AuthStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, ttl_seconds=900)


@pytest.fixture
def outbox() -> list[tuple[str, str]]:
    """(email, raw reset token) pairs delivered by forgot_password()."""
    return []


@pytest.fixture
def service(store: AuthStore, issuer: TokenIssuer, clock: FakeClock, outbox: list) -> AuthService:
    return AuthService(
        store,
        issuer,
        clock=clock,
        reset_notifier=lambda account, raw: outbox.append((account.email, raw)),
    )


@pytest.fixture
def make_account(store: AuthStore):
    """Factory fixture: make_account(email=..., role=..., department_id=...) -> stored Account."""

    def _make(
        email: str = "a@x.com",
        password: str = PASSWORD,
        role: Role = Role.END_USER,
        department_id: str = "D1",
        **fields,
    ) -> Account:
        account_id = store.create_account(
            Account(
                email=email,
                password_hash=hash_password(password, 4),
                role=role,
                department_id=department_id,
                first_name=fields.pop("first_name", "Test"),
                last_name=fields.pop("last_name", "User"),
                **fields,
            )
        )
        return store.get_by_id(account_id)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, issuer: TokenIssuer, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.token_issuer = issuer
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers and middleware but an isolated database. The
    admin (admin@corp.com / PASSWORD, department D1) is created before the
    client starts.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    store = AuthStore(db_url=f"sqlite:///{db_path}")
    issuer = TokenIssuer.from_settings()
    service = AuthService(store, issuer)

    admin_id = store.create_account(
        Account(
            email="admin@corp.com",
            password_hash=hash_password(PASSWORD, 4),
            role=Role.ADMIN,
            department_id="D1",
            first_name="Ada",
            last_name="Admin",
        )
    )
    token = issuer.issue_access_token(store.get_by_id(admin_id))

    app.router.lifespan_context = _patch_lifespan(store, issuer, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin_id

    store.close()
