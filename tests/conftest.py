"""
tests/conftest.py -- Shared test fixtures for Ayerhs unit and integration tests.

This module provides:
  - settings: Settings with cheap bcrypt rounds and a short OTP TTL
  - settings_factory: the same defaults with per-test overrides
  - private_key_pem / public_key_pem / encrypt: one RSA key pair per session
  - clock: a controllable UTC clock injected into OtpEngine and the orchestrator
  - notifier: a FakeNotifier that records sent codes instead of using SMTP
  - store / orchestrator: a fresh in-memory CredentialStore and its orchestrator
  - register: helper creating an account through the orchestrator
  - api_client: TestClient with the real app and a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool and
plain :memory: DBs are per-connection.

DEBUG must be set before any api/core import so get_settings() auto-generates
AES key material instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/core import. get_settings() is cached and
# read at import time by api.limiter.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_VERIFY_RATE_LIMIT", "20/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.crypto import CryptoCore
from auth.orchestrator import AuthOrchestrator
from auth.otp import OtpEngine
from auth.store import CredentialStore
from core.config import Settings

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeNotifier:
    """Records every OTP instead of sending mail. Set fail=True to simulate SMTP errors."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send_otp(self, email, otp, subject, body_template=None):
        if self.fail:
            return False, "Failed to send OTP email"
        self.sent.append((email, otp, subject))
        return True, None

    def last_otp(self) -> str:
        return self.sent[-1][1]


# ---------------------------------------------------------------------------
# Settings and keys
# ---------------------------------------------------------------------------


def _make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "bcrypt_rounds": 4,
        "max_login_attempts": 5,
        "lockout_seconds": 900,
        "otp_ttl_seconds": 300,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def settings_factory():
    """Return a function building Settings with test defaults plus overrides."""
    return _make_settings


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    return CryptoCore.generate_private_key_pem()


@pytest.fixture(scope="session")
def public_key_pem(private_key_pem: str) -> str:
    return CryptoCore.public_key_pem(private_key_pem)


@pytest.fixture(scope="session")
def encrypt(public_key_pem: str):
    """Return a function that encrypts a password the way a client would."""

    def _encrypt(password: str) -> str:
        return CryptoCore.encrypt_password(password, public_key_pem)

    return _encrypt


# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def orchestrator(settings, store, clock, notifier) -> AuthOrchestrator:
    return AuthOrchestrator(
        settings,
        store,
        CryptoCore(settings),
        OtpEngine(settings, store, clock=clock),
        notifier,
        clock=clock,
    )


@pytest.fixture
def register(orchestrator: AuthOrchestrator, private_key_pem: str, encrypt):
    """Return a helper that registers an account and returns its database id."""

    def _register(email: str = "alice@example.com", password: str = "correct-horse", username: str | None = None) -> int:
        result = orchestrator.register(
            "Alice",
            username or email.split("@")[0],
            email,
            encrypt(password),
            private_key_pem,
        )
        assert result.ok, result
        return result.user_id

    return _register


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: CredentialStore, private_key: str, notifier: FakeNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, key and fake notifier into app.state so TestClient
    routes never touch the production database or an SMTP server.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.private_key = private_key
        app.state.notifier = notifier
        app.state.orchestrator = AuthOrchestrator(
            settings,
            store,
            CryptoCore(settings),
            OtpEngine(settings, store),
            notifier,
        )
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(private_key_pem: str) -> Generator[TestClient, None, None]:
    """Yield a TestClient bound to an isolated shared-memory store.

    Module-scoped: tests in one module share accounts, so each test uses
    its own email addresses.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = CredentialStore(db_url)
    app.router.lifespan_context = _patch_lifespan(_make_settings(), store, private_key_pem, FakeNotifier())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()
