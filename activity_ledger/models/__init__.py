"""Ledger models - re-exports all models and Base.metadata."""

from .base import Base, UUIDMixin, TimestampMixin
from .activity_event import ActivityEvent
from .raw_source_log import RawSourceLog
from .subject_profile import SubjectProfile
from .content_course_map import ContentCourseMap

__all__ = [
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "ActivityEvent",
    "RawSourceLog",
    "SubjectProfile",
    "ContentCourseMap",
]
