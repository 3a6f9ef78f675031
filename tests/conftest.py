"""
tests/conftest.py -- Shared test fixtures for TicketGate tests.

This module provides:
  - FakeClock: a settable clock injected wherever the services take `clock`
  - _make_user_store(): isolated in-memory credential store
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient with an admin and a regular user already created
  - login(): password login helper returning the bearer token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import:
get_settings() is cached on first use and api/limiter.py reads the rate
limits at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import NamedTuple
from unittest.mock import MagicMock

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("API_RATE_LIMIT", "10000/minute")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SCANNER_MODE", "block")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from audit.trail import AuditTrail
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

TEST_SECRET = os.environ["SECRET_KEY"]
TRACKER_URL = "https://tracker.example.com"

ADMIN_USERNAME = "testadmin"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1n!Pass"
USER_USERNAME = "alice"
USER_EMAIL = "alice@example.com"
USER_PASSWORD = "Al1ce!Pass"


class FakeClock:
    """Callable clock. Starts at the real current time so python-jose,
    which checks token expiry against the wall clock, accepts fresh tokens."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


# ---------------------------------------------------------------------------
# Store / trail helpers
# ---------------------------------------------------------------------------


def _make_user_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory credential store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'accounts').
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _add_user(store: UserStore, username: str, email: str, password: str, role: str = "user", **extra) -> int:
    return store.create_user(
        User(username=username, email=email, role=role, hashed_password=hash_password(password), **extra)
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_trail(tmp_path: Path, clock: FakeClock) -> AuditTrail:
    return AuditTrail(tmp_path / "audit", TEST_SECRET, clock=clock)


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = _make_user_store(uuid.uuid4().hex)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Application harness
# ---------------------------------------------------------------------------


class Harness(NamedTuple):
    client: TestClient
    clock: FakeClock
    tracker: MagicMock
    admin_id: int
    user_id: int


def _patch_lifespan(user_store: UserStore, tracker: MagicMock, clock: FakeClock, audit_dir: Path):
    """Return an async context manager that replaces the real lifespan.

    Uses the same build_services() wiring as production, with an isolated
    store, a mocked tracker client, a temporary audit directory, and the
    fake clock.

    The housekeeping_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings().model_copy(
            update={"audit_log_dir": str(audit_dir), "audit_archive_dir": str(audit_dir / "archive")}
        )
        build_services(app, settings, user_store=user_store, tracker=tracker, clock=clock)
        app.state.housekeeping_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.housekeeping_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[Harness, None, None]:
    """Yield a Harness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan, so
    tests hit real middleware and route handlers. One admin and one regular
    user exist before the client starts; neither must change their password.
    """
    suffix = tmp_path_factory.mktemp("api").name
    user_store = _make_user_store(suffix)
    admin_id = _add_user(user_store, ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD, role="admin")
    user_id = _add_user(user_store, USER_USERNAME, USER_EMAIL, USER_PASSWORD)

    tracker = MagicMock()
    tracker.base_url = TRACKER_URL
    tracker.configured = True
    clock = FakeClock()

    app.router.lifespan_context = _patch_lifespan(user_store, tracker, clock, tmp_path_factory.mktemp("audit"))

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Harness(client, clock, tracker, admin_id, user_id)

    user_store.close()


@pytest.fixture(autouse=True)
def _reset_tracker_mock(request) -> None:
    """Clear call history and side effects on the shared tracker mock between tests."""
    if "api_client" in request.fixturenames:
        harness = request.getfixturevalue("api_client")
        harness.tracker.reset_mock(return_value=True, side_effect=True)
        harness.tracker.base_url = TRACKER_URL
        harness.client.cookies.clear()


def login(client: TestClient, username: str, password: str) -> str:
    """Log in and return the bearer token. Clears the cookie jar so callers
    authenticate explicitly via the Authorization header."""
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["token"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
