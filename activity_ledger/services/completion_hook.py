"""Fire-and-forget notification to the assignment-completion tracker."""

from __future__ import annotations

import logging
import uuid

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


async def notify_assignment_completion(
    event_id: uuid.UUID,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """POST the new event id to the tracker. Failures are logged, never raised."""
    url = settings.completion_hook_url.strip()
    if not url:
        return False

    try:
        async with httpx.AsyncClient(timeout=settings.completion_hook_timeout_seconds, transport=transport) as client:
            response = await client.post(url, json={"activityEventId": str(event_id)})
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Assignment completion hook failed for event %s: %s", event_id, exc)
        return False
    return True
