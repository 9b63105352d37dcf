"""
tests/conftest.py -- Shared test fixtures for AuthGate integration tests.

This module provides:
  - RecordingMailer: Mailer that records OTP codes and reset links instead
    of talking to SMTP, and can be told to fail
  - _make_test_store(): isolated in-memory DB per test module
  - _patch_lifespan(): wires the test store and mailer into app.state,
    bypassing real startup
  - api_client: (TestClient, store, mailer) for route integration tests
  - user_store / mailer: function-scoped doubles for controller unit tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import: DEBUG so get_settings()
auto-generates SECRET_KEY, BCRYPT_ROUNDS=4 so hashing is fast, and
RATE_LIMIT_ENABLED=false so repeated logins never hit the limiter.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.errors import MailDeliveryError
from auth.mailer import Mailer
from auth.models import User
from auth.otp import new_otp_record
from auth.store import UserStore
from auth.tokens import hash_password

PASSWORD = "Sup3rSecret!"


# ---------------------------------------------------------------------------
# Mail double
# ---------------------------------------------------------------------------


class RecordingMailer(Mailer):
    """Mailer that keeps what it would have sent.

    otps and reset_links map recipient -> most recent code / link.
    Set fail=True to make every send raise MailDeliveryError.
    """

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.otps: dict[str, str] = {}
        self.reset_links: dict[str, str] = {}
        self.fail = False

    def send_email(self, to_email, subject, text_content, html_content=None, debug_info=None) -> None:
        if self.fail:
            raise MailDeliveryError("SMTP unavailable")
        self.sent.append((to_email, subject))

    def send_otp_email(self, to_email: str, otp: str, ttl_minutes: int) -> None:
        super().send_otp_email(to_email, otp, ttl_minutes)
        self.otps[to_email] = otp

    def send_password_reset_email(self, to_email: str, reset_url: str, ttl_minutes: int) -> None:
        super().send_password_reset_email(to_email, reset_url, ttl_minutes)
        self.reset_links[to_email] = reset_url


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, mailer: Mailer):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.mailer = mailer
        yield

    return test_lifespan


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def make_verified_user(store: UserStore, email: str | None = None, password: str = PASSWORD) -> User:
    """Insert a verified credentials user directly, bypassing the OTP flow."""
    email = email or unique_email()
    _otp, record = new_otp_record(0, email)
    user_id = store.create_credentials_user(
        User(email=email, name="Test User", hashed_password=hash_password(password)), record
    )
    store.update_user(user_id, is_email_verified=True)
    store.revoke_otps(user_id)
    return store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, UserStore, RecordingMailer], None, None]:
    """Yield (client, store, mailer) for API integration tests.

    One TestClient per test module for speed; the real app with a patched
    lifespan, so tests hit real route handlers against an isolated DB.
    """
    user_store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    mailer = RecordingMailer()

    app.router.lifespan_context = _patch_lifespan(user_store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, user_store, mailer

    user_store.close()


@pytest.fixture()
def client(api_client) -> TestClient:
    """The module's TestClient with an empty cookie jar."""
    test_client, _store, mailer = api_client
    test_client.cookies.clear()
    mailer.fail = False
    return test_client


@pytest.fixture()
def user_store() -> Generator[UserStore, None, None]:
    store = _make_test_store(uuid.uuid4().hex)
    yield store
    store.close()


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def new_email():
    """Factory for unique addresses: new_email() or new_email("prefix")."""
    return unique_email


@pytest.fixture()
def verified_user():
    """Factory: verified_user(store, email=None, password=PASSWORD) -> User."""
    return make_verified_user
