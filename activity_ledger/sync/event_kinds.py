"""Canonical event vocabulary and source precedence."""

from __future__ import annotations

import re
from enum import Enum


class EventKind(str, Enum):
    LESSON_COMPLETED = "lesson_completed"
    QUIZ_ATTEMPTED = "quiz_attempted"
    USER_SIGNIN = "user_signin"
    USER_SIGNUP = "user_signup"
    ENROLLMENT_CREATED = "enrollment_created"


# Webhook (resource, action) -> canonical kind. Anything else is logged only.
WEBHOOK_KIND_MAP: dict[tuple[str, str], EventKind] = {
    ("lesson", "completed"): EventKind.LESSON_COMPLETED,
    ("quiz", "attempted"): EventKind.QUIZ_ATTEMPTED,
    ("user", "signin"): EventKind.USER_SIGNIN,
    ("user", "signup"): EventKind.USER_SIGNUP,
    ("user", "sign_up"): EventKind.USER_SIGNUP,
    ("enrollment", "created"): EventKind.ENROLLMENT_CREATED,
}

# Free-form aliases from spreadsheets and older records, keyed after
# `_alias_key` folding (lower case, separators collapsed to "_").
KIND_ALIASES: dict[str, EventKind] = {
    "lesson_completed": EventKind.LESSON_COMPLETED,
    "lesson_complete": EventKind.LESSON_COMPLETED,
    "lesson": EventKind.LESSON_COMPLETED,
    "completed_lesson": EventKind.LESSON_COMPLETED,
    "quiz_attempted": EventKind.QUIZ_ATTEMPTED,
    "quiz_attempt": EventKind.QUIZ_ATTEMPTED,
    "quiz_completed": EventKind.QUIZ_ATTEMPTED,
    "quiz": EventKind.QUIZ_ATTEMPTED,
    "survey_quiz": EventKind.QUIZ_ATTEMPTED,
    "user_signin": EventKind.USER_SIGNIN,
    "user_sign_in": EventKind.USER_SIGNIN,
    "signin": EventKind.USER_SIGNIN,
    "sign_in": EventKind.USER_SIGNIN,
    "login": EventKind.USER_SIGNIN,
    "user_signup": EventKind.USER_SIGNUP,
    "user_sign_up": EventKind.USER_SIGNUP,
    "signup": EventKind.USER_SIGNUP,
    "sign_up": EventKind.USER_SIGNUP,
    "enrollment_created": EventKind.ENROLLMENT_CREATED,
    "enrollment": EventKind.ENROLLMENT_CREATED,
    "enrolled": EventKind.ENROLLMENT_CREATED,
}

# Kinds that can satisfy an assignment downstream.
COMPLETION_KINDS = frozenset({EventKind.LESSON_COMPLETED, EventKind.QUIZ_ATTEMPTED})


def _alias_key(value: str) -> str:
    return re.sub(r"[\s.\-/]+", "_", value.strip().lower()).strip("_")


def kind_from_webhook(resource: str | None, action: str | None) -> EventKind | None:
    """Map a webhook (resource, action) pair to a canonical kind."""
    if not resource or not action:
        return None
    return WEBHOOK_KIND_MAP.get((resource.strip().lower(), action.strip().lower()))


def canonical_kind(value: str | None) -> EventKind | None:
    """Map any known alias ("quiz.attempted", "Lesson Completed", ...) to a kind."""
    if not value or not isinstance(value, str):
        return None
    return KIND_ALIASES.get(_alias_key(value))


class SourceTag(str, Enum):
    """Provenance of an ActivityEvent, declared in precedence order."""

    WEBHOOK = "webhook"
    BACKFILL_API = "backfill_api"
    CSV_IMPORT = "csv_import"
    REPAIR = "repair"

    @property
    def precedence(self) -> int:
        """Lower is more authoritative."""
        return list(SourceTag).index(self)

    def outranks(self, other: "SourceTag") -> bool:
        return self.precedence < other.precedence


def soft_match_authorities(candidate: SourceTag, allowed: set[str]) -> list[SourceTag]:
    """Sources whose records a candidate from `candidate` is soft-matched against.

    Only sources that outrank the candidate and appear in `allowed` count.
    """
    return [tag for tag in SourceTag if tag.outranks(candidate) and tag.value in allowed]
