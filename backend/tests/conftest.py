"""Pytest configuration and fixtures for AdWizard tests.

Each test gets a fresh file-backed SQLite database (via aiosqlite) and the
app's session factory is pointed at it through a dependency override.
"""

import os

# Settings are read at import time; configure before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./adwizard_test.db")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SAVE_RETRY_BASE_DELAY", "0")
os.environ.setdefault("SAVE_DEBOUNCE_SECONDS", "0.01")
os.environ.setdefault("MIGRATION_RETRY_DELAY", "0")
os.environ.setdefault("SECRET_KEY", "test-secret")

import json
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth.jwt import create_access_token
from app.database import Base, get_session_factory
from app.deps import get_content_client
from app.main import app
from app.models import *  # noqa: F401,F403
from app.services.content_generation import ContentGenerationClient
from app.services.progress_store import SqlProgressStore
from app.services.versioned_save import VersionedSaveEngine
from app.utils.locks import SqlLockManager

from fakes import InMemoryLockManager, InMemoryProgressStore, no_wait

TEST_USER_ID = "user-1"


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database with every wizard table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'adwizard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlProgressStore:
    return SqlProgressStore(session_factory)


@pytest.fixture
def sql_locks(session_factory) -> SqlLockManager:
    return SqlLockManager(session_factory)


# ── In-memory doubles ────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()


@pytest.fixture
def engine(store) -> VersionedSaveEngine:
    return VersionedSaveEngine(store, max_retries=3, base_delay=0, sleep=no_wait)


# ── Content generation ───────────────────────────────────────────

def generation_handler(request: httpx.Request) -> httpx.Response:
    """Stand-in for the content-generation service."""
    body = json.loads(request.content)
    if body["type"] == "hooks":
        return httpx.Response(200, json={"hooks": [{"text": "Hook A"}, {"text": "Hook B"}]})
    return httpx.Response(
        200,
        json={"variants": [{"headline": f"{body['platform']} ad {i}"} for i in range(3)]},
    )


@pytest.fixture
def content_client() -> ContentGenerationClient:
    return ContentGenerationClient(
        "http://content.test/generate",
        transport=httpx.MockTransport(generation_handler),
    )


# ── API client ───────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, content_client) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the database and generator overridden."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_content_client] = lambda: content_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def test_token() -> str:
    return create_access_token(user_id=TEST_USER_ID)


@pytest.fixture
def auth_headers(test_token: str) -> dict:
    """Create authorization headers with test token."""
    return {"Authorization": f"Bearer {test_token}"}


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API endpoint tests")
    config.addinivalue_line("markers", "concurrency: Interleaving and race tests")
