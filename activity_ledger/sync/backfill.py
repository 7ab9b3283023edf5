"""Group backfill from the LMS read APIs.

Each group member is handled by its own worker with its own session; the
number of concurrent workers is bounded by a semaphore. Re-running a
backfill is safe because every candidate goes through the reconciler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..errors import MalformedInputError, UpstreamError
from ..schemas.reports import BackfillReport
from .event_kinds import EventKind, SourceTag
from .lms_client import LMSClient
from .reconciler import Candidate, ReconcileOutcome, reconcile_candidate
from .scores import parse_count
from .store import upsert_subject_profile
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _attempt_score(node: dict[str, Any]) -> Any:
    """percentageScore when present, else score/maxScore."""
    if node.get("percentageScore") is not None:
        return node["percentageScore"]
    score, max_score = node.get("score"), node.get("maxScore")
    try:
        if score is not None and max_score:
            return float(score) / float(max_score) * 100
    except (TypeError, ValueError):
        return None
    return None


def quiz_attempt_candidate(member: dict[str, Any], node: dict[str, Any]) -> Candidate:
    """Quiz attempt node to a candidate.

    The attempt id is kept as `source_event_id` only. The key is the content
    hash so a spreadsheet row for the same attempt lands on the same key.
    """
    occurred_at = parse_timestamp(node.get("completedAt"))
    if occurred_at is None:
        raise MalformedInputError(f"Quiz attempt {node.get('id')} has no completion time")
    quiz = node.get("quiz") or {}
    course = node.get("course") or {}
    return Candidate(
        subject_id=str(member["id"]),
        subject_email=member.get("email"),
        subject_display_name=_display_name(member),
        event_kind=EventKind.QUIZ_ATTEMPTED,
        occurred_at=occurred_at,
        source=SourceTag.BACKFILL_API,
        content_id=_str_or_none(quiz.get("id")),
        content_title=_str_or_none(quiz.get("name")),
        course_id=_str_or_none(course.get("id")),
        course_name=_str_or_none(course.get("name")),
        attempt_number=parse_count(node.get("attemptNumber")),
        raw_score=_attempt_score(node),
        correct_count=parse_count(node.get("correctCount")),
        incorrect_count=parse_count(node.get("incorrectCount")),
        source_event_id=_str_or_none(node.get("id")),
        raw_payload=node,
    )


def lesson_candidate(member: dict[str, Any], node: dict[str, Any]) -> Candidate | None:
    """Completed-content node to a lesson candidate; other content types are skipped."""
    content_type = str(node.get("type") or "lesson").lower()
    if content_type != "lesson":
        return None
    occurred_at = parse_timestamp(node.get("completedAt"))
    if occurred_at is None:
        raise MalformedInputError(f"Completed content {node.get('id')} has no completion time")
    course = node.get("course") or {}
    return Candidate(
        subject_id=str(member["id"]),
        subject_email=member.get("email"),
        subject_display_name=_display_name(member),
        event_kind=EventKind.LESSON_COMPLETED,
        occurred_at=occurred_at,
        source=SourceTag.BACKFILL_API,
        content_id=_str_or_none(node.get("id")),
        content_title=_str_or_none(node.get("name")),
        course_id=_str_or_none(course.get("id")),
        course_name=_str_or_none(course.get("name")),
        raw_payload=node,
    )


def _display_name(member: dict[str, Any]) -> str | None:
    full = member.get("full_name") or " ".join(
        p for p in (member.get("first_name"), member.get("last_name")) if p
    )
    return _str_or_none(full)


def _count(report: BackfillReport, outcome: ReconcileOutcome) -> None:
    if outcome == ReconcileOutcome.RECORDED:
        report.recorded += 1
    elif outcome == ReconcileOutcome.DUPLICATE:
        report.duplicates += 1
    else:
        report.soft_duplicates += 1


async def _backfill_subject(
    db: AsyncSession,
    client: LMSClient,
    member: dict[str, Any],
    report: BackfillReport,
) -> None:
    subject_id = str(member["id"])
    await upsert_subject_profile(
        db,
        subject_id=subject_id,
        email=member.get("email"),
        display_name=member.get("full_name"),
        first_name=member.get("first_name"),
        last_name=member.get("last_name"),
    )
    await db.commit()

    streams = (
        ("quiz attempts", client.iter_quiz_attempts, quiz_attempt_candidate),
        ("completed lessons", client.iter_completed_contents, lesson_candidate),
    )
    for label, stream, build in streams:
        try:
            async for node in stream(subject_id):
                try:
                    candidate = build(member, node)
                except MalformedInputError as exc:
                    report.total += 1
                    report.rejected += 1
                    report.note(f"subject {subject_id}: {exc.message}")
                    continue
                if candidate is None:
                    continue
                report.total += 1
                try:
                    result = await reconcile_candidate(db, candidate)
                except SQLAlchemyError as exc:
                    await db.rollback()
                    logger.warning("Storing %s for subject %s failed: %s", label, subject_id, exc)
                    report.add_error(
                        f"subject {subject_id} {label}: could not store {node.get('id')} ({type(exc).__name__})"
                    )
                    continue
                _count(report, result.outcome)
        except UpstreamError as exc:
            # Rows already inserted for this stream stay; the stream is abandoned.
            logger.warning("Backfill of %s for subject %s stopped: %s", label, subject_id, exc.message)
            report.add_error(f"subject {subject_id} {label}: {exc.message}")


async def run_backfill(
    session_factory: async_sessionmaker[AsyncSession],
    client: LMSClient,
    group_id: str,
    *,
    max_workers: int | None = None,
) -> BackfillReport:
    """Pull quiz attempts and completed lessons for every member of a group."""
    report = BackfillReport(group_id=str(group_id))
    members = await client.list_group_members(str(group_id))

    workers = max(1, max_workers or settings.backfill_max_workers)
    semaphore = asyncio.Semaphore(workers)

    async def worker(member: dict[str, Any]) -> None:
        async with semaphore:
            async with session_factory() as db:
                try:
                    await _backfill_subject(db, client, member, report)
                except Exception as exc:
                    logger.exception("Backfill failed for subject %s", member.get("id"))
                    report.add_error(f"subject {member.get('id')}: {exc}")

    tasks = []
    for member in members:
        if _str_or_none(member.get("id")) is None:
            report.rejected += 1
            report.note(f"member without id skipped: {member.get('email') or '<unknown>'}")
            continue
        report.subjects += 1
        tasks.append(worker(member))

    await asyncio.gather(*tasks)
    logger.info(
        "Backfill group %s: %d subjects, %d recorded, %d duplicates, %d soft duplicates, %d errors",
        group_id,
        report.subjects,
        report.recorded,
        report.duplicates,
        report.soft_duplicates,
        report.errors,
    )
    return report
