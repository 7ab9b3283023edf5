"""Inbound LMS webhook receiver."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..schemas.events import WebhookAck
from ..security import verify_webhook_request
from ..services.completion_hook import notify_assignment_completion
from ..services.webhook_svc import DeliveryStatus, ingest_delivery

logger = logging.getLogger(__name__)

TOPIC_HEADER = "x-thinkific-topic"

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/lms", response_model=WebhookAck)
async def receive_lms_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Receive an LMS delivery. Answers 200 for anything past authentication
    so the sender does not retry deliveries we cannot use."""
    raw_body = await request.body()
    verify_webhook_request(request, raw_body)

    try:
        body = json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Dropping webhook delivery with unparseable body (%d bytes)", len(raw_body))
        return WebhookAck(status=DeliveryStatus.DROPPED_INVALID.value)

    try:
        result = await ingest_delivery(db, body, topic=request.headers.get(TOPIC_HEADER))
    except Exception:
        logger.exception("Webhook ingestion failed")
        return WebhookAck(success=False, status="error")

    if result.notify and settings.completion_hook_url:
        background_tasks.add_task(notify_assignment_completion, result.event.id)
    return WebhookAck(status=result.status.value)
