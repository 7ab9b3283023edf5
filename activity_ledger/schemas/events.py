"""Activity event schemas."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class ActivityEventResponse(BaseModel):
    id: uuid.UUID
    subject_id: str
    subject_email: str | None = None
    subject_display_name: str | None = None
    event_kind: str
    course_id: str | None = None
    course_name: str | None = None
    content_id: str | None = None
    content_title: str | None = None
    attempt_number: int | None = None
    score_percent: float | None = None
    correct_count: int | None = None
    incorrect_count: int | None = None
    occurred_at: datetime
    source: str
    dedupe_key: str
    key_strength: str

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    success: bool = True
    status: str


class CsvImportRequest(BaseModel):
    csv_text: str
    profile: str = "activity"


class RepairRequest(BaseModel):
    fields: list[str] | None = None
    dry_run: bool = False


class CorrectionsRequest(BaseModel):
    csv_text: str
    fields: list[str] | None = None
    dry_run: bool = False
