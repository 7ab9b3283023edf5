"""Repair jobs: the only writers allowed to touch stored events.

Repairs only ever fill fields that are currently null. Identity and
provenance columns are never written.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from sqlalchemy import Select, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import LedgerError, MalformedInputError
from ..models.activity_event import ActivityEvent
from ..models.raw_source_log import RawSourceLog
from ..schemas.reports import AmbiguousMatch, RepairReport
from ..sync.backfill import lesson_candidate, quiz_attempt_candidate
from ..sync.column_map import CORRECTIONS_PROFILE
from ..sync.csv_import import SheetRow, read_sheet
from ..sync.dedupe import WEBHOOK_NAMESPACE, StrongKey
from ..sync.event_kinds import EventKind, SourceTag, canonical_kind, kind_from_webhook
from ..sync.scores import normalize_score, parse_count
from ..sync.store import content_matches, find_course_for_content, find_event_by_dedupe_key, insert_event, normalize_email
from ..sync.timestamps import as_utc, parse_timestamp
from .webhook_svc import build_event, parse_envelope, person_of, record_subject

logger = logging.getLogger(__name__)

REPAIRABLE_FIELDS = (
    "course_id",
    "course_name",
    "content_id",
    "content_title",
    "attempt_number",
    "score_percent",
    "correct_count",
    "incorrect_count",
)

PROTECTED_FIELDS = frozenset(
    {"source", "dedupe_key", "subject_id", "subject_email", "event_kind", "occurred_at"}
)


def validate_fields(fields: list[str] | None) -> tuple[str, ...]:
    """Requested repair fields, defaulting to all repairable ones."""
    if not fields:
        return REPAIRABLE_FIELDS
    unknown = [f for f in fields if f not in REPAIRABLE_FIELDS]
    if unknown:
        raise MalformedInputError(
            f"Not repairable: {', '.join(unknown)}. Repairable: {', '.join(REPAIRABLE_FIELDS)}"
        )
    return tuple(dict.fromkeys(fields))


def fill_nulls(event: ActivityEvent, values: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    """Copy values onto the event where the event's field is null."""
    filled: list[str] = []
    for name in fields:
        if name in PROTECTED_FIELDS or name not in REPAIRABLE_FIELDS:
            continue
        value = values.get(name)
        if value is None or getattr(event, name) is not None:
            continue
        setattr(event, name, value)
        filled.append(name)
    return filled


async def _batches(
    db: AsyncSession,
    stmt: Select,
    model: Any,
    *,
    batch_size: int | None = None,
    delay: float | None = None,
) -> AsyncIterator[list[Any]]:
    """Keyset-paginate `stmt` by primary key, pausing between batches."""
    size = batch_size or settings.repair_batch_size
    pause = settings.repair_batch_delay_seconds if delay is None else delay
    last_id = None
    while True:
        page = stmt if last_id is None else stmt.where(model.id > last_id)
        rows = list((await db.execute(page.order_by(model.id).limit(size))).scalars().all())
        if not rows:
            return
        last_id = rows[-1].id
        yield rows
        if len(rows) < size:
            return
        if pause > 0:
            await asyncio.sleep(pause)


async def _finish_batch(db: AsyncSession, dry_run: bool) -> None:
    if dry_run:
        await db.rollback()
    else:
        await db.commit()


# -- payload repair ---------------------------------------------------------


def values_from_payload(event: ActivityEvent) -> dict[str, Any]:
    """Recover repairable values from the event's own raw payload.

    Understands webhook envelopes, GraphQL attempt/content nodes and
    spreadsheet rows.
    """
    raw = event.raw_payload
    if not isinstance(raw, dict) or not raw:
        return {}

    if "payload" in raw and ("resource" in raw or "topic" in raw):
        envelope = parse_envelope(raw, event.occurred_at)
        kind = kind_from_webhook(envelope.resource, envelope.action)
        if kind is None:
            return {}
        rebuilt = build_event(envelope, kind)
        return {name: getattr(rebuilt, name) for name in REPAIRABLE_FIELDS}

    if "row_number" in raw:
        correct = parse_count(raw.get("correct_count"))
        incorrect = parse_count(raw.get("incorrect_count"))
        total = parse_count(raw.get("total_questions"))
        if incorrect is None and correct is not None and total is not None and total >= correct:
            incorrect = total - correct
        return {
            "course_id": _text(raw.get("course_id")),
            "course_name": _text(raw.get("course_name")),
            "content_id": _text(raw.get("content_id")),
            "content_title": _text(raw.get("content_title")),
            "attempt_number": parse_count(raw.get("attempt_number")),
            "score_percent": normalize_score(raw.get("score"), fractions=settings.score_fractions_enabled),
            "correct_count": correct,
            "incorrect_count": incorrect,
        }

    member = {"id": event.subject_id}
    if "quiz" in raw or "percentageScore" in raw:
        candidate = quiz_attempt_candidate(member, raw)
    else:
        candidate = lesson_candidate(member, raw)
        if candidate is None:
            return {}
    return {
        "course_id": candidate.course_id,
        "course_name": candidate.course_name,
        "content_id": candidate.content_id,
        "content_title": candidate.content_title,
        "attempt_number": candidate.attempt_number,
        "score_percent": normalize_score(candidate.raw_score, fractions=settings.score_fractions_enabled),
        "correct_count": candidate.correct_count,
        "incorrect_count": candidate.incorrect_count,
    }


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


async def repair_from_payloads(
    db: AsyncSession,
    fields: list[str] | None = None,
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    delay: float | None = None,
) -> RepairReport:
    """Fill null fields from each event's raw payload."""
    targets = validate_fields(fields)
    report = RepairReport(job="payload", dry_run=dry_run)
    stmt = select(ActivityEvent).where(or_(*[getattr(ActivityEvent, f).is_(None) for f in targets]))

    async for batch in _batches(db, stmt, ActivityEvent, batch_size=batch_size, delay=delay):
        for event in batch:
            report.scanned += 1
            try:
                filled = fill_nulls(event, values_from_payload(event), targets)
            except (LedgerError, ValueError, TypeError) as exc:
                message = exc.message if isinstance(exc, LedgerError) else str(exc)
                logger.warning("Payload repair failed for event %s: %s", event.id, message)
                report.add_error(f"event {event.id}: {message}")
                continue
            if filled:
                report.updated += 1
            else:
                report.skipped += 1
        await _finish_batch(db, dry_run)

    logger.info("Payload repair: %d scanned, %d updated, %d errors", report.scanned, report.updated, report.errors)
    return report


# -- correction spreadsheet repair ------------------------------------------


def _row_values(row: SheetRow) -> dict[str, Any]:
    correct = parse_count(row.get("correct_count"))
    incorrect = parse_count(row.get("incorrect_count"))
    total = parse_count(row.get("total_questions"))
    if incorrect is None and correct is not None and total is not None and total >= correct:
        incorrect = total - correct
    return {
        "course_id": row.get("course_id"),
        "course_name": row.get("course_name"),
        "attempt_number": parse_count(row.get("attempt_number")),
        "score_percent": normalize_score(row.get("score"), fractions=settings.score_fractions_enabled),
        "correct_count": correct,
        "incorrect_count": incorrect,
    }


def _course_matches(row: SheetRow, event: ActivityEvent) -> bool:
    row_id, row_name = row.get("course_id"), row.get("course_name")
    if row_id and event.course_id:
        return row_id == event.course_id
    if row_name and event.course_name:
        return row_name.casefold() == event.course_name.casefold()
    return True


async def _correction_candidates(
    db: AsyncSession,
    row: SheetRow,
    kind: EventKind | None,
    values: dict[str, Any],
    targets: tuple[str, ...],
) -> list[ActivityEvent]:
    subject_id = row.get("subject_id")
    stmt = select(ActivityEvent)
    if subject_id:
        stmt = stmt.where(ActivityEvent.subject_id == subject_id)
    else:
        stmt = stmt.where(ActivityEvent.subject_email == normalize_email(row.get("subject_email")))
    if kind is not None:
        stmt = stmt.where(ActivityEvent.event_kind == kind.value)
    events = (await db.execute(stmt)).scalars().all()

    wanted = [f for f in targets if values.get(f) is not None]
    return [
        event
        for event in events
        if content_matches(row.get("content_id"), row.get("content_title"), event.content_id, event.content_title)
        and _course_matches(row, event)
        and any(getattr(event, f) is None for f in wanted)
    ]


async def repair_from_corrections(
    db: AsyncSession,
    csv_text: str,
    fields: list[str] | None = None,
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    delay: float | None = None,
) -> RepairReport:
    """Apply a correction spreadsheet to existing events. Never inserts.

    Each row is matched by subject, content, course and date; when several
    events qualify the one closest in time wins and the choice is reported.
    """
    targets = validate_fields(fields)
    columns, rows = read_sheet(csv_text, CORRECTIONS_PROFILE)
    report = RepairReport(job="corrections", dry_run=dry_run)
    size = batch_size or settings.repair_batch_size
    pause = settings.repair_batch_delay_seconds if delay is None else delay

    for start in range(0, len(rows), size):
        if start and pause > 0:
            await asyncio.sleep(pause)
        for row in rows[start : start + size]:
            report.scanned += 1
            try:
                await _apply_correction(db, row, targets, report)
            except LedgerError as exc:
                logger.warning("Correction row %d failed: %s", row.number, exc.message)
                report.add_error(f"Row {row.number}: {exc.message}")
        await _finish_batch(db, dry_run)

    logger.info(
        "Correction repair: %d rows, %d updated, %d ambiguous, %d errors",
        report.scanned,
        report.updated,
        len(report.ambiguous),
        report.errors,
    )
    return report


async def _apply_correction(
    db: AsyncSession,
    row: SheetRow,
    targets: tuple[str, ...],
    report: RepairReport,
) -> None:
    occurred_at = parse_timestamp(row.get("occurred_at"))
    if occurred_at is None:
        raise MalformedInputError(f"unreadable date '{row.get('occurred_at')}'")
    raw_kind = row.get("event_kind")
    kind = canonical_kind(raw_kind) if raw_kind else None
    if raw_kind and kind is None:
        raise MalformedInputError(f"unknown event kind '{raw_kind}'")

    values = _row_values(row)
    candidates = await _correction_candidates(db, row, kind, values, targets)
    if not candidates:
        report.skipped += 1
        return

    candidates.sort(key=lambda e: (abs((as_utc(e.occurred_at) - occurred_at).total_seconds()), str(e.id)))
    chosen = candidates[0]
    if len(candidates) > 1:
        match = AmbiguousMatch(
            row_number=row.number,
            subject_id=chosen.subject_id,
            content=row.get("content_title") or row.get("content_id"),
            row_occurred_at=occurred_at,
            candidate_event_ids=[str(e.id) for e in candidates],
            chosen_event_id=str(chosen.id),
            delta_seconds=abs((as_utc(chosen.occurred_at) - occurred_at).total_seconds()),
        )
        report.ambiguous.append(match)
        logger.warning(
            "Correction row %d matched %d events; using %s (%.0fs away)",
            row.number,
            len(candidates),
            chosen.id,
            match.delta_seconds,
        )

    if fill_nulls(chosen, values, targets):
        report.updated += 1
    else:
        report.skipped += 1


# -- course name repair ------------------------------------------------------


async def repair_course_names(
    db: AsyncSession,
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    delay: float | None = None,
) -> RepairReport:
    """Fill null course id/name from the content -> course map."""
    report = RepairReport(job="course_names", dry_run=dry_run)
    stmt = select(ActivityEvent).where(
        ActivityEvent.content_id.is_not(None),
        or_(ActivityEvent.course_id.is_(None), ActivityEvent.course_name.is_(None)),
    )
    fields = ("course_id", "course_name")

    async for batch in _batches(db, stmt, ActivityEvent, batch_size=batch_size, delay=delay):
        for event in batch:
            report.scanned += 1
            mapping = await find_course_for_content(db, event.content_id)
            if mapping is None:
                report.skipped += 1
                continue
            filled = fill_nulls(event, {"course_id": mapping.course_id, "course_name": mapping.course_name}, fields)
            if filled:
                report.updated += 1
            else:
                report.skipped += 1
        await _finish_batch(db, dry_run)

    logger.info("Course name repair: %d scanned, %d updated", report.scanned, report.updated)
    return report


# -- raw log rebuild ---------------------------------------------------------


async def rebuild_from_raw_log(
    db: AsyncSession,
    *,
    dry_run: bool = False,
    batch_size: int | None = None,
    delay: float | None = None,
) -> RepairReport:
    """Replay stored deliveries that never produced an event.

    Uses the same `wh:` key as live ingestion, so re-running is harmless.
    """
    report = RepairReport(job="rebuild", dry_run=dry_run)
    stmt = select(RawSourceLog)

    async for batch in _batches(db, stmt, RawSourceLog, batch_size=batch_size, delay=delay):
        # Plain values: a rollback inside insert_event expires loaded rows.
        deliveries = [(r.delivery_id, r.payload_json, r.received_at, r.topic) for r in batch]
        for delivery_id, payload_json, received_at, topic in deliveries:
            report.scanned += 1
            key = StrongKey(WEBHOOK_NAMESPACE, delivery_id)
            if await find_event_by_dedupe_key(db, key.value) is not None:
                report.skipped += 1
                continue
            try:
                envelope = parse_envelope(payload_json, received_at, topic)
                kind = kind_from_webhook(envelope.resource, envelope.action)
                if kind is None:
                    report.skipped += 1
                    continue
                event = build_event(envelope, kind, source=SourceTag.REPAIR)
            except MalformedInputError as exc:
                report.skipped += 1
                report.note(f"delivery {delivery_id}: {exc.message}")
                continue

            if dry_run:
                report.recorded += 1
                continue
            await record_subject(db, event, person_of(envelope, kind))
            if await insert_event(db, event) is not None:
                report.recorded += 1
            else:
                report.skipped += 1
        await _finish_batch(db, dry_run)

    logger.info("Raw log rebuild: %d deliveries, %d recorded", report.scanned, report.recorded)
    return report
