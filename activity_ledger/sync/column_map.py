"""Spreadsheet column aliases and import profiles.

Every spreadsheet variant is described by the alias table plus a profile;
there is one import pipeline.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..errors import MalformedInputError
from .event_kinds import EventKind

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "subject_id": ("subject_id", "thinkificUserId", "user_id", "userId", "Student ID", "User ID"),
    "subject_email": ("subject_email", "studentEmail", "Student Email", "email", "Email", "User Email"),
    "subject_name": ("subject_name", "Student Name", "studentName", "Name", "Full Name"),
    "event_kind": ("event_kind", "eventType", "Event Type", "Activity Type", "type"),
    "occurred_at": (
        "occurred_at",
        "occurredAt",
        "Date Completed (UTC)",
        "Date Completed",
        "Completed At",
        "completedAt",
        "Date",
        "Timestamp",
    ),
    "course_id": ("course_id", "courseId", "Course ID"),
    "course_name": ("course_name", "courseName", "Course Name", "Course"),
    "content_id": ("content_id", "lessonId", "quizId", "Lesson ID", "Quiz ID"),
    "content_title": (
        "content_title",
        "lessonName",
        "quizName",
        "Survey/Quiz Name",
        "Quiz Name",
        "Lesson Name",
        "Quiz",
        "Lesson",
    ),
    "attempt_number": ("attempt_number", "attemptNumber", "Attempt", "Attempt Number", "Attempts"),
    "score": ("score", "grade", "% Score", "Score", "Percentage", "Percent Score", "percentageScore"),
    "correct_count": ("correct_count", "correctCount", "Total Correct", "Correct", "Correct Answers"),
    "incorrect_count": ("incorrect_count", "incorrectCount", "Total Incorrect", "Incorrect"),
    "total_questions": ("total_questions", "Total Number of Questions", "Total Questions", "Questions"),
}


def fold_header(name: str) -> str:
    """Case- and space-insensitive header form."""
    return re.sub(r"[\s_]+", "", name.lstrip("\ufeff").strip().lower())


_ALIAS_LOOKUP: dict[str, str] = {
    fold_header(alias): logical for logical, aliases in COLUMN_ALIASES.items() for alias in aliases
}


@dataclass(frozen=True)
class ImportProfile:
    name: str
    # Each entry is satisfied when any one of its logical fields is present.
    required: tuple[tuple[str, ...], ...]
    default_kind: EventKind | None = None


IMPORT_PROFILES: dict[str, ImportProfile] = {
    "activity": ImportProfile(
        name="activity",
        required=(("subject_id", "subject_email"), ("event_kind",), ("occurred_at",)),
    ),
    "quiz_export": ImportProfile(
        name="quiz_export",
        required=(("subject_id", "subject_email"), ("content_title", "content_id"), ("occurred_at",)),
        default_kind=EventKind.QUIZ_ATTEMPTED,
    ),
}


# Correction sheets locate existing events; they never create them.
CORRECTIONS_PROFILE = ImportProfile(
    name="corrections",
    required=(("subject_id", "subject_email"), ("content_title", "content_id"), ("occurred_at",)),
)


def get_profile(name: str | None) -> ImportProfile:
    key = (name or "activity").strip().lower().replace("-", "_")
    profile = IMPORT_PROFILES.get(key)
    if profile is None:
        raise MalformedInputError(
            f"Unknown import profile '{name}'. Available: {', '.join(sorted(IMPORT_PROFILES))}"
        )
    return profile


def resolve_columns(headers: list[str], profile: ImportProfile) -> dict[str, int]:
    """Map logical fields to column indexes; first matching column wins.

    Raises MalformedInputError naming the missing requirements.
    """
    columns: dict[str, int] = {}
    for index, header in enumerate(headers):
        logical = _ALIAS_LOOKUP.get(fold_header(header or ""))
        if logical and logical not in columns:
            columns[logical] = index

    missing = [" or ".join(options) for options in profile.required if not any(o in columns for o in options)]
    if missing:
        raise MalformedInputError(
            f"Missing required columns for profile '{profile.name}': {', '.join(missing)}"
        )
    return columns
