"""Lesson/quiz -> course lookup learned from webhook deliveries."""

from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UUIDMixin, TimestampMixin


class ContentCourseMap(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "content_course_map"

    content_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    course_id: Mapped[str | None] = mapped_column(String(100), default=None)
    course_name: Mapped[str | None] = mapped_column(String(255), default=None)
