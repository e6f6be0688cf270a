"""Security test fixtures.

Responsibilities:
- Creates the FastAPI `app` fixture over an in-memory store
- Wraps it in `client` (attacker perspective, no server exceptions raised)
- Resets the module-level webhook outcome counters between tests

Signing helpers (`sign_headers`, `make_body`) come from tests/conftest.py.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tests.signing import WEBHOOK_SECRET
from usersync.app import create_app
from usersync.config import Settings
from usersync.store import InMemoryUserStore
from usersync.webhooks import handlers


@pytest.fixture(autouse=True)
def _reset_webhook_counts():
    handlers._webhook_counts.clear()
    yield
    handlers._webhook_counts.clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def app(settings, store):
    return create_app(settings, store=store)


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (provider/attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
