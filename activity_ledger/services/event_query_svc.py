"""Read access to the activity log for downstream consumers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.activity_event import ActivityEvent


async def list_events(
    db: AsyncSession,
    *,
    subject_ids: list[str] | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    kinds: list[str] | None = None,
    limit: int = 500,
    offset: int = 0,
) -> list[ActivityEvent]:
    """Events for a subject set in [start, end), newest first."""
    stmt = select(ActivityEvent)
    if subject_ids:
        stmt = stmt.where(ActivityEvent.subject_id.in_(subject_ids))
    if start is not None:
        stmt = stmt.where(ActivityEvent.occurred_at >= start)
    if end is not None:
        stmt = stmt.where(ActivityEvent.occurred_at < end)
    if kinds:
        stmt = stmt.where(ActivityEvent.event_kind.in_(kinds))
    stmt = stmt.order_by(ActivityEvent.occurred_at.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
