"""FastAPI application for the activity ledger."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .worker import backfill_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables for SQLite (local dev)
    if "sqlite" in settings.database_url:
        from .database import engine
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    if settings.backfill_schedule_enabled and not backfill_scheduler.enabled:
        logger.warning("Scheduled backfill enabled but LMS credentials or group ids are missing")
    backfill_scheduler.start()
    yield
    await backfill_scheduler.stop()


app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Import and register routers
from .routers import events, health, sync, webhooks  # noqa: E402

app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(events.router)
app.include_router(health.router)
