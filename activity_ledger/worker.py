"""Background worker for scheduled group backfills."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import settings
from .database import async_session_factory
from .sync.backfill import run_backfill
from .sync.lms_client import LMSClient

logger = logging.getLogger(__name__)


class BackfillScheduler:
    """Backfills the configured groups every interval until stopped."""

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return (
            settings.backfill_schedule_enabled
            and settings.lms_configured
            and bool(settings.scheduled_group_ids)
        )

    def start(self) -> None:
        if self._task is not None or not self.enabled:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="ledger-backfill-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> None:
        async with LMSClient() as client:
            for group_id in settings.scheduled_group_ids:
                try:
                    report = await run_backfill(async_session_factory, client, group_id)
                    logger.info(
                        "Scheduled backfill of group %s recorded %d events", group_id, report.recorded
                    )
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Scheduled backfill of group %s failed", group_id)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Backfill scheduler loop failed")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=settings.backfill_schedule_interval_seconds
                )
            except asyncio.TimeoutError:
                pass


backfill_scheduler = BackfillScheduler()
