"""Pytest configuration and fixtures for crm_sync.

Secrets are set before the app is imported so Settings validation passes.
HTTP tests use crm_sync.main:app through httpx.ASGITransport; DB-backed
tests need DATABASE_URL and are skipped without it.
"""

import os

os.environ.setdefault("CREDENTIAL_ENCRYPTION_SECRET", "test-credential-secret-0123456789abcdef")
os.environ.setdefault("ENCRYPTION_SALT", "test-salt-0123456789")

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.core.config import get_settings
from crm_sync.core.limiter import limiter
from crm_sync.core.runtime import SyncRuntime
from crm_sync.main import app


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def runtime(settings) -> SyncRuntime:
    """Runtime whose shared HTTP client refuses every request."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected outbound request: {request.method} {request.url}")

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
        yield SyncRuntime.create(settings, http_client)


@pytest.fixture
async def client(runtime: SyncRuntime) -> AsyncClient:
    """Async HTTP client against the FastAPI app (ASGI, lifespan not run)."""
    app.state.sync_runtime = runtime
    limiter.enabled = False
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def db_session() -> AsyncSession:
    """Database session for repository tests. Rolled back after each test.

    Skips when DATABASE_URL is not set. Run the migrations first:
    alembic upgrade head.
    """
    if not get_settings().sql_configured:
        pytest.skip("Postgres not configured: set DATABASE_URL, then run: alembic upgrade head")
    from crm_sync.infrastructure.persistence.database import dispose_engine, session_factory

    async with session_factory()() as session:
        yield session
        await session.rollback()
    await dispose_engine()
