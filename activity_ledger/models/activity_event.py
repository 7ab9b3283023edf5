"""Canonical activity log: one row per real-world occurrence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UUIDMixin, TimestampMixin


class ActivityEvent(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "activity_event"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_activity_event_dedupe_key"),
    )

    subject_id: Mapped[str] = mapped_column(String(100), index=True)
    subject_email: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    subject_display_name: Mapped[str | None] = mapped_column(String(255), default=None)

    event_kind: Mapped[str] = mapped_column(String(50), index=True)
    course_id: Mapped[str | None] = mapped_column(String(100), default=None)
    course_name: Mapped[str | None] = mapped_column(String(255), default=None)
    content_id: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    content_title: Mapped[str | None] = mapped_column(String(500), default=None)
    attempt_number: Mapped[int | None] = mapped_column(Integer, default=None)

    score_percent: Mapped[float | None] = mapped_column(Float, default=None)
    correct_count: Mapped[int | None] = mapped_column(Integer, default=None)
    incorrect_count: Mapped[int | None] = mapped_column(Integer, default=None)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    source: Mapped[str] = mapped_column(String(20), index=True)  # webhook, backfill_api, csv_import, repair

    dedupe_key: Mapped[str] = mapped_column(String(120))
    key_strength: Mapped[str] = mapped_column(String(10), default="weak")  # strong, weak
    source_event_id: Mapped[str | None] = mapped_column(String(100), default=None)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, default=None)

    def __repr__(self) -> str:
        return f"<ActivityEvent {self.event_kind} {self.subject_id} {self.dedupe_key}>"
