"""Cross-source reconciliation for backfill and spreadsheet candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models.activity_event import ActivityEvent
from .dedupe import DedupeKey, derive_dedupe_key
from .event_kinds import EventKind, SourceTag, soft_match_authorities
from .scores import normalize_score
from .store import (
    find_event_by_dedupe_key,
    find_soft_duplicate,
    insert_event,
    normalize_email,
    upsert_subject_profile,
)

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    SOFT_DUPLICATE = "soft_duplicate"


@dataclass
class Candidate:
    """An occurrence reported by a non-webhook source, not yet stored."""

    subject_id: str
    event_kind: EventKind
    occurred_at: datetime
    source: SourceTag
    subject_email: str | None = None
    subject_display_name: str | None = None
    course_id: str | None = None
    course_name: str | None = None
    content_id: str | None = None
    content_title: str | None = None
    attempt_number: int | None = None
    raw_score: Any = None
    correct_count: int | None = None
    incorrect_count: int | None = None
    source_event_id: str | None = None
    namespace: str | None = None
    raw_payload: dict | None = field(default=None, repr=False)

    def dedupe_key(self) -> DedupeKey:
        return derive_dedupe_key(
            self.event_kind.value,
            self.subject_id,
            self.content_id,
            self.course_id,
            self.occurred_at,
            self.source_event_id if self.namespace else None,
            namespace=self.namespace,
            content_title=self.content_title,
            course_name=self.course_name,
        )


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    dedupe_key: DedupeKey
    event: ActivityEvent | None = None


async def reconcile_candidate(
    db: AsyncSession,
    candidate: Candidate,
    *,
    tolerance_seconds: float | None = None,
    authoritative_sources: set[str] | None = None,
    fractions: bool | None = None,
) -> ReconcileResult:
    """Record a candidate unless an exact or soft duplicate already exists."""
    if tolerance_seconds is None:
        tolerance_seconds = settings.soft_duplicate_tolerance_seconds
    if authoritative_sources is None:
        authoritative_sources = settings.soft_match_source_set
    if fractions is None:
        fractions = settings.score_fractions_enabled

    key = candidate.dedupe_key()
    if await find_event_by_dedupe_key(db, key.value) is not None:
        return ReconcileResult(ReconcileOutcome.DUPLICATE, key)

    authorities = soft_match_authorities(candidate.source, authoritative_sources)
    match = await find_soft_duplicate(
        db,
        subject_id=candidate.subject_id,
        event_kind=candidate.event_kind.value,
        content_id=candidate.content_id,
        content_title=candidate.content_title,
        occurred_at=candidate.occurred_at,
        tolerance_seconds=tolerance_seconds,
        sources=[tag.value for tag in authorities],
    )
    if match is not None:
        logger.debug(
            "Soft duplicate for %s %s: matches event %s from %s",
            candidate.event_kind.value,
            candidate.subject_id,
            match.id,
            match.source,
        )
        return ReconcileResult(ReconcileOutcome.SOFT_DUPLICATE, key, match)

    event = ActivityEvent(
        subject_id=candidate.subject_id,
        subject_email=normalize_email(candidate.subject_email),
        subject_display_name=candidate.subject_display_name,
        event_kind=candidate.event_kind.value,
        course_id=candidate.course_id,
        course_name=candidate.course_name,
        content_id=candidate.content_id,
        content_title=candidate.content_title,
        attempt_number=candidate.attempt_number,
        score_percent=normalize_score(candidate.raw_score, fractions=fractions),
        correct_count=candidate.correct_count,
        incorrect_count=candidate.incorrect_count,
        occurred_at=candidate.occurred_at,
        source=candidate.source.value,
        dedupe_key=key.value,
        key_strength=key.strength,
        source_event_id=candidate.source_event_id,
        raw_payload=candidate.raw_payload,
    )
    stored = await insert_event(db, event)
    if stored is None:
        return ReconcileResult(ReconcileOutcome.DUPLICATE, key)

    await upsert_subject_profile(
        db,
        subject_id=candidate.subject_id,
        email=candidate.subject_email,
        display_name=candidate.subject_display_name,
        seen_at=candidate.occurred_at,
    )
    await db.commit()
    return ReconcileResult(ReconcileOutcome.RECORDED, key, stored)
