"""Store helpers for the canonical event log and its side tables."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.activity_event import ActivityEvent
from ..models.content_course_map import ContentCourseMap
from ..models.raw_source_log import RawSourceLog
from ..models.subject_profile import SubjectProfile
from .timestamps import as_utc, utcnow

logger = logging.getLogger(__name__)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_email(value: Any) -> str | None:
    text = _clean(value)
    return text.lower() if text else None


async def find_event_by_dedupe_key(db: AsyncSession, dedupe_key: str) -> ActivityEvent | None:
    stmt = select(ActivityEvent).where(ActivityEvent.dedupe_key == dedupe_key)
    return (await db.execute(stmt)).scalar_one_or_none()


async def insert_event(db: AsyncSession, event: ActivityEvent) -> ActivityEvent | None:
    """Insert if no event holds the same dedupe key.

    Commits on success. Returns None when the key already exists, either
    found up front or raised by the unique constraint in a race.
    """
    if await find_event_by_dedupe_key(db, event.dedupe_key) is not None:
        return None

    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Dedupe key %s inserted concurrently; treating as duplicate", event.dedupe_key)
        return None
    await db.refresh(event)
    return event


async def append_raw_log(
    db: AsyncSession,
    *,
    delivery_id: str,
    topic: str | None,
    payload: Any,
    received_at: datetime | None = None,
) -> RawSourceLog:
    """Append an audit copy of a delivery and commit it immediately."""
    row = RawSourceLog(
        delivery_id=delivery_id,
        topic=topic,
        received_at=received_at or utcnow(),
        payload_json=payload if isinstance(payload, dict) else {"body": payload},
    )
    db.add(row)
    await db.commit()
    return row


async def raw_log_exists(db: AsyncSession, delivery_id: str) -> bool:
    stmt = select(func.count()).select_from(RawSourceLog).where(RawSourceLog.delivery_id == delivery_id)
    return ((await db.execute(stmt)).scalar() or 0) > 0


async def upsert_subject_profile(
    db: AsyncSession,
    *,
    subject_id: str,
    email: str | None = None,
    display_name: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    seen_at: datetime | None = None,
) -> SubjectProfile:
    """Create or refresh a profile. Empty values never erase stored ones.

    No commit is performed here; callers commit with their own writes.
    """
    email = normalize_email(email)
    first_name = _clean(first_name)
    last_name = _clean(last_name)
    display_name = _clean(display_name) or _clean(" ".join(p for p in (first_name, last_name) if p))

    stmt = select(SubjectProfile).where(SubjectProfile.subject_id == subject_id)
    profile = (await db.execute(stmt)).scalar_one_or_none()
    if profile is None:
        profile = SubjectProfile(
            subject_id=subject_id,
            email=email,
            display_name=display_name,
            first_name=first_name,
            last_name=last_name,
            last_seen_at=seen_at,
        )
        db.add(profile)
        return profile

    if email:
        profile.email = email
    if display_name:
        profile.display_name = display_name
    if first_name:
        profile.first_name = first_name
    if last_name:
        profile.last_name = last_name
    if seen_at and (profile.last_seen_at is None or as_utc(seen_at) > as_utc(profile.last_seen_at)):
        profile.last_seen_at = seen_at
    return profile


async def find_profile_by_email(db: AsyncSession, email: str) -> SubjectProfile | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    stmt = (
        select(SubjectProfile)
        .where(SubjectProfile.email == normalized)
        .order_by(SubjectProfile.last_seen_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def upsert_content_course_map(
    db: AsyncSession,
    *,
    content_id: str | None,
    course_id: str | None,
    course_name: str | None,
) -> None:
    """Remember which course a lesson/quiz belongs to. No commit."""
    content_id = _clean(content_id)
    course_id = _clean(course_id)
    course_name = _clean(course_name)
    if not content_id or not (course_id or course_name):
        return

    stmt = select(ContentCourseMap).where(ContentCourseMap.content_id == content_id)
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing:
        if course_id:
            existing.course_id = course_id
        if course_name:
            existing.course_name = course_name
        return

    db.add(ContentCourseMap(content_id=content_id, course_id=course_id, course_name=course_name))


async def find_course_for_content(db: AsyncSession, content_id: str) -> ContentCourseMap | None:
    stmt = select(ContentCourseMap).where(ContentCourseMap.content_id == content_id)
    return (await db.execute(stmt)).scalar_one_or_none()


def content_matches(
    left_id: str | None,
    left_title: str | None,
    right_id: str | None,
    right_title: str | None,
) -> bool:
    """Same content when both ids agree, else when titles agree ignoring case.

    Two sides with no content at all (sign-ins) also match.
    """
    left_id, right_id = _clean(left_id), _clean(right_id)
    if left_id and right_id:
        return left_id == right_id
    left_title, right_title = _clean(left_title), _clean(right_title)
    if left_title and right_title:
        return left_title.casefold() == right_title.casefold()
    return not (left_id or left_title or right_id or right_title)


async def find_soft_duplicate(
    db: AsyncSession,
    *,
    subject_id: str,
    event_kind: str,
    content_id: str | None,
    content_title: str | None,
    occurred_at: datetime,
    tolerance_seconds: float,
    sources: Iterable[str],
) -> ActivityEvent | None:
    """Closest event from `sources` for the same subject/kind/content within tolerance."""
    source_list = list(sources)
    if not source_list:
        return None

    occurred_at = as_utc(occurred_at)
    window = timedelta(seconds=tolerance_seconds)
    stmt = select(ActivityEvent).where(
        ActivityEvent.subject_id == subject_id,
        ActivityEvent.event_kind == event_kind,
        ActivityEvent.source.in_(source_list),
        ActivityEvent.occurred_at >= occurred_at - window,
        ActivityEvent.occurred_at <= occurred_at + window,
    )
    rows = (await db.execute(stmt)).scalars().all()

    best: ActivityEvent | None = None
    best_delta: float | None = None
    for row in rows:
        if not content_matches(content_id, content_title, row.content_id, row.content_title):
            continue
        delta = abs((as_utc(row.occurred_at) - occurred_at).total_seconds())
        if delta > tolerance_seconds:
            continue
        if best_delta is None or delta < best_delta:
            best, best_delta = row, delta
    return best
