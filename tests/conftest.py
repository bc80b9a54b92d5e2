"""
tests/conftest.py -- Shared test fixtures for AccessGate.

This module provides:
  - store / file_store: isolated AuthStore instances (in-memory, or a temp
    file for tests that write from several threads)
  - registry: ApiKeyRegistry over the in-memory store
  - api_client: TestClient wired to an isolated store, plus issued keys

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
api_client because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

Environment must be set before any auth/core import:
  DEBUG=true           -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=10     -- the floor; keeps the suite fast
  LOGIN_RATE_LIMIT     -- raised so the shared limiter never trips mid-suite
  ALLOWED_HOSTS        -- TestClient sends Host: testserver
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "10")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.registry import ApiKeyRegistry
from auth.store import AuthStore

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    """Fresh in-memory AuthStore for single-threaded unit tests."""
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[AuthStore, None, None]:
    """File-backed AuthStore for tests that write from several threads."""
    s = AuthStore(f"sqlite:///{tmp_path / 'accessgate_test.db'}")
    yield s
    s.close()


@pytest.fixture
def registry(store: AuthStore) -> ApiKeyRegistry:
    return ApiKeyRegistry(store)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_store: AuthStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated database rather than auth/accessgate.db.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = auth_store
        app.state.registry = ApiKeyRegistry(auth_store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, dict[str, str], AuthStore], None, None]:
    """Yield (client, keys, store) for API integration tests.

    keys maps a key name to its one-time material:
      "ops-admin"   -- read, write, admin
      "svc-writer"  -- read, write
      "svc-reader"  -- read
    Each test module gets its own named in-memory database.
    """
    db_name = f"test_auth_{request.module.__name__.rsplit('.', 1)[-1]}"
    auth_store = AuthStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    registry = ApiKeyRegistry(auth_store)
    keys = {
        "ops-admin": registry.issue("ops-admin", {"read", "write", "admin"}).material,
        "svc-writer": registry.issue("svc-writer", {"read", "write"}).material,
        "svc-reader": registry.issue("svc-reader", {"read"}).material,
    }

    app.router.lifespan_context = _patch_lifespan(auth_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, keys, auth_store

    auth_store.close()
