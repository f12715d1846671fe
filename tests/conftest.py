"""
tests/conftest.py -- Shared test fixtures for the IdeaBridge identity tests.

This module provides:
  - FakeClock: controllable UTC clock injected into every store and engine
  - RecordingSender: CodeSender double that captures delivered codes
  - make_settings(): Settings with test-friendly overrides
  - service: AuthService over memory or sqlite:///:memory: (parametrized)
  - api_client: TestClient with a patched lifespan wiring an isolated service

Design: the SQL variant uses plain sqlite:///:memory:. ItemTable pins such
URLs to a single shared connection (StaticPool), so route handlers running
in TestClient's thread pool all see the same database.

DEBUG must be set before any core/auth import so get_settings() can
auto-generate SECRET_KEY in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

# CRITICAL: environment before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.notifier import CodeSender, DeliveryError
from auth.service import AuthService, build_auth_service
from auth.table import ItemTable
from core.config import Settings

PHONE = "+15555551212"
PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSender(CodeSender):
    """Captures (destination, code) pairs; raises DeliveryError when fail is set."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send_sms(self, destination: str, code: str) -> None:
        if self.fail:
            raise DeliveryError("gateway down")
        self.sent.append((destination, code))

    @property
    def last_code(self) -> str:
        assert self.sent, "No code was delivered"
        return self.sent[-1][1]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "debug": True,
        "secret_key": "test-secret-key-that-is-at-least-32-characters",
        "store_backend": "memory",
        "database_url": "sqlite:///:memory:",
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
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def table() -> Generator[ItemTable, None, None]:
    item_table = ItemTable("sqlite:///:memory:")
    yield item_table
    item_table.close()


@pytest.fixture(params=["memory", "sql"])
def service(request, clock: FakeClock, sender: RecordingSender) -> Generator[AuthService, None, None]:
    """AuthService over each backend with a fake clock and recording sender."""
    auth_service = build_auth_service(make_settings(store_backend=request.param), sender=sender, clock=clock)
    yield auth_service
    auth_service.close()


def register_and_confirm(service: AuthService, sender: RecordingSender, email: str = "ada@example.com"):
    """Drive a full signup; returns the authenticated AuthResult."""
    staged = service.register(email=email, password=PASSWORD, display_name="Ada", phone_number=PHONE)
    return service.confirm_verification(staged.challenge.id, sender.last_code)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes use
    isolated stores and the recording sender instead of the configured ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = auth_service
        yield

    return test_lifespan


@pytest.fixture
def api_client(clock: FakeClock, sender: RecordingSender) -> Generator[tuple[TestClient, AuthService, RecordingSender], None, None]:
    """Yield (client, service, sender) for API integration tests.

    Function-scoped: the TestClient keeps cookies between requests, so each
    test starts with a fresh jar and fresh stores.
    """
    auth_service = build_auth_service(make_settings(), sender=sender, clock=clock)
    app.router.lifespan_context = _patch_lifespan(auth_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, auth_service, sender

    auth_service.close()
