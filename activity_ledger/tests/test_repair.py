"""Repair jobs only ever fill nulls."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from activity_ledger.errors import MalformedInputError
from activity_ledger.models.activity_event import ActivityEvent
from activity_ledger.services.repair_svc import (
    REPAIRABLE_FIELDS,
    fill_nulls,
    rebuild_from_raw_log,
    repair_course_names,
    repair_from_corrections,
    repair_from_payloads,
    validate_fields,
)
from activity_ledger.services.webhook_svc import ingest_delivery
from activity_ledger.sync.csv_import import import_spreadsheet

from activity_ledger.tests.factories import SUBJECT_ID, lesson_delivery, quiz_delivery


async def _event(db: AsyncSession, dedupe_key: str) -> ActivityEvent:
    stmt = select(ActivityEvent).where(ActivityEvent.dedupe_key == dedupe_key).execution_options(
        populate_existing=True
    )
    return (await db.execute(stmt)).scalar_one()


async def _event_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count()).select_from(ActivityEvent))).scalar()


def test_validate_fields():
    assert validate_fields(None) == REPAIRABLE_FIELDS
    assert validate_fields(["score_percent", "score_percent"]) == ("score_percent",)
    with pytest.raises(MalformedInputError):
        validate_fields(["subject_id"])


def test_fill_nulls_never_touches_protected_or_set_fields():
    event = ActivityEvent(subject_id="1", score_percent=None, correct_count=4)

    filled = fill_nulls(
        event,
        {"score_percent": 90, "correct_count": 9, "subject_id": "2"},
        ("score_percent", "correct_count", "subject_id"),
    )

    assert filled == ["score_percent"]
    assert event.score_percent == 90
    assert event.correct_count == 4
    assert event.subject_id == "1"


@pytest.mark.asyncio
async def test_payload_repair_fills_only_nulls(db: AsyncSession):
    event = (await ingest_delivery(db, quiz_delivery("d-1"))).event
    event.score_percent = None
    event.course_name = None
    event.correct_count = 5
    await db.commit()

    report = await repair_from_payloads(db, delay=0)

    assert report.scanned == 1
    assert report.updated == 1
    repaired = await _event(db, "wh:d-1")
    assert repaired.score_percent == 85
    assert repaired.course_name == "Algebra I"
    assert repaired.correct_count == 5


@pytest.mark.asyncio
async def test_payload_repair_restricted_to_requested_fields(db: AsyncSession):
    event = (await ingest_delivery(db, quiz_delivery("d-1"))).event
    event.score_percent = None
    event.course_name = None
    await db.commit()

    await repair_from_payloads(db, ["course_name"], delay=0)

    repaired = await _event(db, "wh:d-1")
    assert repaired.course_name == "Algebra I"
    assert repaired.score_percent is None


@pytest.mark.asyncio
async def test_payload_repair_reads_spreadsheet_rows(db: AsyncSession):
    sheet = "Student ID,Quiz Name,Date Completed,Score\n1001,Unit Quiz,2025-01-01 09:00,0.75\n"
    await import_spreadsheet(db, sheet, "quiz_export")
    event = (await db.execute(select(ActivityEvent))).scalar_one()
    event.score_percent = None
    await db.commit()

    report = await repair_from_payloads(db, ["score_percent"], delay=0)

    assert report.updated == 1
    assert (await _event(db, event.dedupe_key)).score_percent == 75


@pytest.mark.asyncio
async def test_payload_repair_dry_run_writes_nothing(db: AsyncSession):
    event = (await ingest_delivery(db, quiz_delivery("d-1"))).event
    event.score_percent = None
    await db.commit()

    report = await repair_from_payloads(db, dry_run=True, delay=0)

    assert report.dry_run
    assert report.updated == 1
    assert (await _event(db, "wh:d-1")).score_percent is None


@pytest.mark.asyncio
async def test_payload_repair_batches_whole_table(db: AsyncSession):
    for n in range(5):
        event = (await ingest_delivery(db, quiz_delivery(f"d-{n}"))).event
        event.course_name = None
    await db.commit()

    report = await repair_from_payloads(db, ["course_name"], batch_size=2, delay=0)

    assert report.scanned == 5
    assert report.updated == 5


@pytest.mark.asyncio
async def test_corrections_choose_closest_event_and_report_ambiguity(db: AsyncSession):
    sheet = (
        "Student ID,Quiz Name,Date Completed\n"
        "1001,Unit Quiz,2025-01-01 09:00\n"
        "1001,Unit Quiz,2025-01-01 09:10\n"
    )
    await import_spreadsheet(db, sheet, "quiz_export")
    corrections = (
        "Student ID,Quiz Name,Date Completed,Score,Total Correct,Total Questions\n"
        "1001,Unit Quiz,2025-01-01 09:08,88,22,25\n"
        "1001,Missing Quiz,2025-01-01 09:08,50,,\n"
    )

    report = await repair_from_corrections(db, corrections, delay=0)

    assert report.scanned == 2
    assert report.updated == 1
    assert report.skipped == 1
    assert len(report.ambiguous) == 1
    ambiguous = report.ambiguous[0]
    assert ambiguous.row_number == 2
    assert ambiguous.subject_id == SUBJECT_ID
    assert len(ambiguous.candidate_event_ids) == 2
    assert ambiguous.delta_seconds == 120

    events = (
        await db.execute(
            select(ActivityEvent).order_by(ActivityEvent.occurred_at).execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert [e.score_percent for e in events] == [None, 88]
    assert events[1].correct_count == 22
    assert events[1].incorrect_count == 3
    assert str(events[1].id) == ambiguous.chosen_event_id
    assert await _event_count(db) == 2


@pytest.mark.asyncio
async def test_corrections_never_overwrite(db: AsyncSession):
    await ingest_delivery(db, quiz_delivery("d-1"))
    corrections = "Student Email,Quiz ID,Date Completed,Score\nada@example.com,Q1,2025-01-01 00:00,10\n"

    report = await repair_from_corrections(db, corrections, ["score_percent"], delay=0)

    assert report.updated == 0
    assert report.skipped == 1
    assert (await _event(db, "wh:d-1")).score_percent == 85


@pytest.mark.asyncio
async def test_corrections_row_errors_are_reported(db: AsyncSession):
    corrections = "Student ID,Quiz Name,Date Completed,Score\n1001,Unit Quiz,someday,88\n"

    report = await repair_from_corrections(db, corrections, delay=0)

    assert report.errors == 1
    assert "someday" in report.error_messages[0]


@pytest.mark.asyncio
async def test_course_names_filled_from_content_map(db: AsyncSession):
    await ingest_delivery(db, lesson_delivery("d-1", course={"id": "C7", "name": "Pre-Algebra"}))
    await ingest_delivery(db, lesson_delivery("d-2", created_at="2025-01-03T10:00:00Z"))
    await ingest_delivery(db, lesson_delivery("d-3", lesson_id="L9"))

    report = await repair_course_names(db, delay=0)

    assert report.scanned == 2
    assert report.updated == 1
    assert report.skipped == 1
    repaired = await _event(db, "wh:d-2")
    assert (repaired.course_id, repaired.course_name) == ("C7", "Pre-Algebra")
    assert (await _event(db, "wh:d-3")).course_id is None


@pytest.mark.asyncio
async def test_rebuild_replays_deliveries_without_events(db: AsyncSession):
    await ingest_delivery(db, quiz_delivery("d-1"))
    await ingest_delivery(db, lesson_delivery("d-2"))
    await ingest_delivery(db, {"id": "d-3", "resource": "order", "action": "created", "payload": {}})
    await db.execute(delete(ActivityEvent).where(ActivityEvent.dedupe_key == "wh:d-1"))
    await db.commit()

    first = await rebuild_from_raw_log(db, delay=0)
    second = await rebuild_from_raw_log(db, delay=0)

    assert first.scanned == 3
    assert first.recorded == 1
    assert first.skipped == 2
    assert second.recorded == 0
    rebuilt = await _event(db, "wh:d-1")
    assert rebuilt.source == "repair"
    assert rebuilt.score_percent == 85
    assert await _event_count(db) == 2


@pytest.mark.asyncio
async def test_rebuild_uses_logged_topic(db: AsyncSession):
    body = lesson_delivery("d-legacy")
    del body["resource"], body["action"]
    await ingest_delivery(db, body, topic="lesson.completed")
    await db.execute(delete(ActivityEvent))
    await db.commit()

    report = await rebuild_from_raw_log(db, delay=0)

    assert report.recorded == 1
    assert (await _event(db, "wh:d-legacy")).event_kind == "lesson_completed"


@pytest.mark.asyncio
async def test_rebuild_dry_run(db: AsyncSession):
    await ingest_delivery(db, quiz_delivery("d-1"))
    await db.execute(delete(ActivityEvent))
    await db.commit()

    report = await rebuild_from_raw_log(db, dry_run=True, delay=0)

    assert report.recorded == 1
    assert await _event_count(db) == 0


@pytest.mark.asyncio
async def test_repair_routes(client: AsyncClient, db: AsyncSession):
    await ingest_delivery(db, quiz_delivery("d-1"))

    bad = await client.post("/sync/repair/payload", json={"fields": ["subject_id"]})
    payload = await client.post("/sync/repair/payload", json={})
    names = await client.post("/sync/repair/course-names")
    rebuild = await client.post("/sync/repair/rebuild", json={"dry_run": True})
    corrections = await client.post("/sync/repair/corrections", json={"csv_text": "Name\nAda\n"})

    assert bad.status_code == 400
    assert payload.status_code == 200
    assert payload.json()["job"] == "payload"
    assert names.json()["job"] == "course_names"
    body = rebuild.json()
    assert (body["job"], body["dry_run"], body["skipped"]) == ("rebuild", True, 1)
    assert corrections.status_code == 400
