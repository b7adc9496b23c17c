"""
tests/conftest.py -- Shared test fixtures for moodledger.

This module provides:
  - make_settings(): Settings pointing at a file-backed SQLite DB in a tmp dir,
    with cheap Argon2 parameters so tests don't burn 64 MiB per hash
  - container: a fully wired AppContainer per test (function scope)
  - api_client: (TestClient, AppContainer) with a patched lifespan
  - register_user: helper fixture that registers via the API and returns
    (session_id, account_id)

Design: file-backed SQLite (not :memory:) because TestClient runs sync route
handlers in a thread pool and the concurrency tests spin up their own
threads. Every connection must see the same database.

The DEBUG env var must be set before any core/auth/api import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from pathlib import Path

# CRITICAL: Set DEBUG before any core/auth import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.credentials import PasswordHasher
from container import AppContainer, build_container
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"


def make_settings(db_dir: Path, **overrides) -> Settings:
    """Return isolated Settings backed by <db_dir>/moodledger.db."""
    values = dict(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=f"sqlite:///{db_dir / 'moodledger.db'}",
        session_backend="database",
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
        min_password_length=8,
        storage_timeout_seconds=10.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def hasher() -> PasswordHasher:
    """A hasher with the cheapest legal Argon2id parameters."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def container(tmp_path: Path) -> Generator[AppContainer, None, None]:
    c = build_container(make_settings(tmp_path))
    yield c
    c.close()


def _patch_lifespan(container: AppContainer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test container into app.state so routes use the isolated DB.
    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.container = container
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AppContainer], None, None]:
    """Yield (client, container) for API integration tests.

    Rate limiting is switched off for the module so tests can register many
    accounts from the same client address; test_rate_limit re-enables it.
    """
    c = build_container(make_settings(tmp_path_factory.mktemp("api")))
    app.router.lifespan_context = _patch_lifespan(c)
    limiter.enabled = False
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, c
    limiter.enabled = True
    c.close()


@pytest.fixture(scope="module")
def register_user(api_client) -> Callable[..., tuple[str, int]]:
    """Register through the API; return (session_id, account_id).

    The cookie jar is cleared afterwards so each test chooses its identity
    explicitly with an Authorization: Bearer header.
    """
    client, _container = api_client

    def _register(username: str, password: str = "correct-horse-1") -> tuple[str, int]:
        resp = client.post("/api/v1/auth/register", json={"username": username, "password": password})
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        data = resp.json()
        return data["session_id"], data["account"]["id"]

    return _register