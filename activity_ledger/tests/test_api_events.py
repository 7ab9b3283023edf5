"""Activity log queries and health endpoints."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from activity_ledger.config import settings
from activity_ledger.services.webhook_svc import ingest_delivery

from activity_ledger.tests.factories import lesson_delivery, quiz_delivery


@pytest_asyncio.fixture
async def seeded(db: AsyncSession):
    await ingest_delivery(db, quiz_delivery("d-1", created_at="2025-01-01T00:00:00Z"))
    await ingest_delivery(db, lesson_delivery("d-2", created_at="2025-01-02T10:00:00Z"))
    await ingest_delivery(
        db,
        quiz_delivery("d-3", subject_id="2002", email="grace@example.com", created_at="2025-01-03T00:00:00Z"),
    )


@pytest.mark.asyncio
async def test_events_newest_first(client: AsyncClient, seeded):
    resp = await client.get("/events")

    assert resp.status_code == 200
    body = resp.json()
    assert [e["dedupe_key"] for e in body] == ["wh:d-3", "wh:d-2", "wh:d-1"]
    assert body[2]["score_percent"] == 85
    assert body[2]["source"] == "webhook"


@pytest.mark.asyncio
async def test_events_filters(client: AsyncClient, seeded):
    by_subject = await client.get("/events", params={"subject_id": ["1001"]})
    by_kind = await client.get("/events", params={"kind": "quiz_attempted"})
    by_window = await client.get(
        "/events",
        params={"start": "2025-01-02T00:00:00Z", "end": "2025-01-03T00:00:00Z"},
    )
    paged = await client.get("/events", params={"limit": 1, "offset": 1})

    assert {e["dedupe_key"] for e in by_subject.json()} == {"wh:d-1", "wh:d-2"}
    assert {e["dedupe_key"] for e in by_kind.json()} == {"wh:d-1", "wh:d-3"}
    assert [e["dedupe_key"] for e in by_window.json()] == ["wh:d-2"]
    assert [e["dedupe_key"] for e in paged.json()] == ["wh:d-2"]


@pytest.mark.asyncio
async def test_events_limit_validation(client: AsyncClient):
    resp = await client.get("/events", params={"limit": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_reports_lms_configuration(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "lms_subdomain", "school")
    monkeypatch.setattr(settings, "lms_api_key", "key-1")

    resp = await client.get("/ready")

    assert resp.json() == {"status": "ready", "service": "activity-ledger", "lms_configured": True}
