"""Activity log query routes for downstream consumers."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas.events import ActivityEventResponse
from ..services.event_query_svc import list_events
from ..sync.timestamps import as_utc

router = APIRouter(tags=["events"])


@router.get("/events", response_model=list[ActivityEventResponse])
async def query_events(
    subject_id: list[str] | None = Query(default=None),
    start: datetime | None = None,
    end: datetime | None = None,
    kind: list[str] | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await list_events(
        db,
        subject_ids=subject_id,
        start=as_utc(start) if start else None,
        end=as_utc(end) if end else None,
        kinds=kind,
        limit=limit,
        offset=offset,
    )
