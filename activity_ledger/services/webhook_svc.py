"""Webhook ingestion: the source-of-truth path into the activity log.

A delivery moves through
    received -> idempotency-checked -> one of DeliveryStatus
and is safe to receive any number of times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import MalformedInputError
from ..models.activity_event import ActivityEvent
from ..sync.dedupe import WEBHOOK_NAMESPACE, StrongKey
from ..sync.event_kinds import COMPLETION_KINDS, EventKind, SourceTag, kind_from_webhook
from ..sync.scores import normalize_score, parse_count
from ..sync.store import (
    append_raw_log,
    find_event_by_dedupe_key,
    insert_event,
    normalize_email,
    raw_log_exists,
    upsert_content_course_map,
    upsert_subject_profile,
)
from ..sync.timestamps import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    RECORDED = "recorded"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_UNRECOGNIZED_KIND = "skipped_unrecognized_kind"
    DROPPED_INVALID = "dropped_invalid"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    event: ActivityEvent | None = None

    @property
    def notify(self) -> bool:
        """Whether the assignment-completion hook should fire."""
        return (
            self.status == DeliveryStatus.RECORDED
            and self.event is not None
            and self.event.event_kind in {k.value for k in COMPLETION_KINDS}
        )


@dataclass
class Envelope:
    delivery_id: str
    resource: str
    action: str
    payload: dict[str, Any]
    occurred_at: datetime
    body: dict[str, Any]

    @property
    def topic(self) -> str:
        return f"{self.resource}.{self.action}"


# Payload paths that must be present per kind; missing any drops the delivery.
REQUIRED_FIELDS: dict[EventKind, tuple[tuple[str, ...], ...]] = {
    EventKind.LESSON_COMPLETED: (("user", "id"), ("lesson", "id")),
    EventKind.QUIZ_ATTEMPTED: (("user", "id"), ("quiz", "id")),
    EventKind.ENROLLMENT_CREATED: (("user", "id"), ("course", "id")),
    EventKind.USER_SIGNIN: (("id",), ("email",)),
    EventKind.USER_SIGNUP: (("id",), ("email",)),
}


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    for part in path:
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def parse_envelope(
    body: Any,
    received_at: datetime | None = None,
    topic: str | None = None,
) -> Envelope:
    """Validate the delivery envelope. Raises MalformedInputError.

    `topic` is the delivery's topic header, used when the body names neither
    resource/action nor a topic of its own.
    """
    if not isinstance(body, dict):
        raise MalformedInputError("Webhook body is not a JSON object")

    delivery_id = _text(body.get("id"))
    if not delivery_id:
        raise MalformedInputError("Webhook delivery has no id")

    resource, action = _text(body.get("resource")), _text(body.get("action"))
    if not (resource and action):
        legacy = _text(body.get("topic")) or _text(topic) or ""
        if "." in legacy:
            resource, action = (part.strip() for part in legacy.split(".", 1))
    if not (resource and action):
        raise MalformedInputError(f"Webhook delivery {delivery_id} has no resource/action")

    payload = body.get("payload")
    occurred_at = (
        parse_timestamp(body.get("created_at"))
        or parse_timestamp(body.get("timestamp"))
        or received_at
        or utcnow()
    )
    return Envelope(
        delivery_id=delivery_id,
        resource=resource.lower(),
        action=action.lower(),
        payload=payload if isinstance(payload, dict) else {},
        occurred_at=occurred_at,
        body=body,
    )


def build_event(
    envelope: Envelope,
    kind: EventKind,
    *,
    source: SourceTag = SourceTag.WEBHOOK,
    fractions: bool | None = None,
) -> ActivityEvent:
    """Map a recognized delivery to an unsaved ActivityEvent.

    Raises MalformedInputError when a required field is missing.
    """
    payload = envelope.payload
    missing = [".".join(path) for path in REQUIRED_FIELDS[kind] if _text(_dig(payload, path)) is None]
    if missing:
        raise MalformedInputError(
            f"Delivery {envelope.delivery_id} ({kind.value}) missing {', '.join(missing)}"
        )
    if fractions is None:
        fractions = settings.score_fractions_enabled

    person = person_of(envelope, kind)
    event = ActivityEvent(
        subject_id=_text(person.get("id")),
        subject_email=normalize_email(person.get("email")),
        subject_display_name=_display_name(person),
        event_kind=kind.value,
        course_id=_text(_dig(payload, ("course", "id"))),
        course_name=_text(_dig(payload, ("course", "name"))),
        occurred_at=envelope.occurred_at,
        source=source.value,
        dedupe_key=StrongKey(WEBHOOK_NAMESPACE, envelope.delivery_id).value,
        key_strength="strong",
        source_event_id=envelope.delivery_id,
        raw_payload=envelope.body,
    )

    if kind == EventKind.LESSON_COMPLETED:
        event.content_id = _text(_dig(payload, ("lesson", "id")))
        event.content_title = _text(_dig(payload, ("lesson", "name")))
    elif kind == EventKind.QUIZ_ATTEMPTED:
        event.content_id = _text(_dig(payload, ("quiz", "id")))
        event.content_title = _text(_dig(payload, ("quiz", "name")))
        event.score_percent = normalize_score(payload.get("grade"), fractions=fractions)
        event.attempt_number = parse_count(payload.get("attempts")) or 1
        event.correct_count = parse_count(payload.get("correct_count"))
        event.incorrect_count = parse_count(payload.get("incorrect_count"))
    return event


def _display_name(person: dict[str, Any]) -> str | None:
    full = _text(person.get("full_name"))
    if full:
        return full
    parts = [p for p in (_text(person.get("first_name")), _text(person.get("last_name"))) if p]
    return " ".join(parts) or None


async def record_subject(db: AsyncSession, event: ActivityEvent, person: dict[str, Any]) -> None:
    """Profile and content/course side effects of an event. No commit."""
    await upsert_subject_profile(
        db,
        subject_id=event.subject_id,
        email=event.subject_email,
        display_name=event.subject_display_name,
        first_name=_text(person.get("first_name")),
        last_name=_text(person.get("last_name")),
        seen_at=event.occurred_at,
    )
    if event.content_id and (event.course_id or event.course_name):
        await upsert_content_course_map(
            db,
            content_id=event.content_id,
            course_id=event.course_id,
            course_name=event.course_name,
        )


def person_of(envelope: Envelope, kind: EventKind) -> dict[str, Any]:
    if kind in (EventKind.USER_SIGNIN, EventKind.USER_SIGNUP):
        return envelope.payload
    person = envelope.payload.get("user")
    return person if isinstance(person, dict) else {}


async def ingest_delivery(
    db: AsyncSession,
    body: Any,
    *,
    received_at: datetime | None = None,
    topic: str | None = None,
) -> DeliveryResult:
    """Process one webhook delivery end to end."""
    received_at = received_at or utcnow()
    try:
        envelope = parse_envelope(body, received_at, topic)
    except MalformedInputError as exc:
        logger.warning("Dropping webhook delivery: %s", exc.message)
        return DeliveryResult(DeliveryStatus.DROPPED_INVALID)

    key = StrongKey(WEBHOOK_NAMESPACE, envelope.delivery_id)
    if await find_event_by_dedupe_key(db, key.value) is not None or await raw_log_exists(
        db, envelope.delivery_id
    ):
        logger.info("Webhook delivery %s already received", envelope.delivery_id)
        return DeliveryResult(DeliveryStatus.SKIPPED_DUPLICATE)

    await append_raw_log(
        db,
        delivery_id=envelope.delivery_id,
        topic=envelope.topic,
        payload=envelope.body,
        received_at=received_at,
    )

    kind = kind_from_webhook(envelope.resource, envelope.action)
    if kind is None:
        logger.info("Webhook delivery %s has unhandled topic %s", envelope.delivery_id, envelope.topic)
        return DeliveryResult(DeliveryStatus.SKIPPED_UNRECOGNIZED_KIND)

    try:
        event = build_event(envelope, kind)
    except MalformedInputError as exc:
        logger.warning("Dropping webhook delivery: %s", exc.message)
        return DeliveryResult(DeliveryStatus.DROPPED_INVALID)

    await record_subject(db, event, person_of(envelope, kind))
    stored = await insert_event(db, event)
    if stored is None:
        return DeliveryResult(DeliveryStatus.SKIPPED_DUPLICATE)

    logger.info("Recorded %s for subject %s from delivery %s", kind.value, stored.subject_id, envelope.delivery_id)
    return DeliveryResult(DeliveryStatus.RECORDED, stored)
