"""Job report schemas for backfill, import and repair runs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from ..config import settings


class JobReport(BaseModel):
    total: int = 0
    errors: int = 0
    error_messages: list[str] = []

    def note(self, message: str, limit: int | None = None) -> None:
        """Keep a message only while under the cap."""
        cap = settings.report_max_errors if limit is None else limit
        if len(self.error_messages) < cap:
            self.error_messages.append(message)

    def add_error(self, message: str, limit: int | None = None) -> None:
        self.errors += 1
        self.note(message, limit)


class BackfillReport(JobReport):
    group_id: str | None = None
    subjects: int = 0
    recorded: int = 0
    duplicates: int = 0
    soft_duplicates: int = 0
    rejected: int = 0


class ImportReport(JobReport):
    profile: str = "activity"
    recorded: int = 0
    duplicates: int = 0
    soft_duplicates: int = 0
    rejected: int = 0
    score_column_detected: bool = False
    score_parse_failures: int = 0


class AmbiguousMatch(BaseModel):
    """A correction row that matched several events; the closest one was used."""

    row_number: int
    subject_id: str
    content: str | None = None
    row_occurred_at: datetime
    candidate_event_ids: list[str]
    chosen_event_id: str
    delta_seconds: float


class RepairReport(JobReport):
    job: str
    dry_run: bool = False
    scanned: int = 0
    updated: int = 0
    recorded: int = 0
    skipped: int = 0
    ambiguous: list[AmbiguousMatch] = []
