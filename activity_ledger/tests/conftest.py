"""Async test fixtures for ledger tests using SQLite."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from activity_ledger.config import settings
from activity_ledger.database import get_db, get_session_factory
from activity_ledger.models.base import Base


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def ledger_settings(monkeypatch: pytest.MonkeyPatch):
    """Deterministic settings regardless of the developer's .env."""
    monkeypatch.setattr(settings, "webhook_signing_secret", "")
    monkeypatch.setattr(settings, "webhook_api_key", "")
    monkeypatch.setattr(settings, "completion_hook_url", "")
    monkeypatch.setattr(settings, "soft_duplicate_tolerance_seconds", 300)
    monkeypatch.setattr(settings, "soft_match_sources", "webhook")
    monkeypatch.setattr(settings, "score_fractions_enabled", True)
    monkeypatch.setattr(settings, "import_allowed_email_domains", "")
    monkeypatch.setattr(settings, "report_max_errors", 20)
    monkeypatch.setattr(settings, "repair_batch_size", 100)
    monkeypatch.setattr(settings, "repair_batch_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "backfill_max_workers", 1)
    return settings


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTPX async test client against the ledger app."""
    from activity_ledger.app import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
