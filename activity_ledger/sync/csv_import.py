"""Spreadsheet import pipeline.

Rows are mapped through the column alias table, resolved to a subject,
then fed to the reconciler with `source=csv_import`.
"""

from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import LedgerError, MalformedInputError, UnresolvedIdentityError
from ..schemas.reports import ImportReport
from .column_map import ImportProfile, get_profile, resolve_columns
from .event_kinds import EventKind, SourceTag, canonical_kind
from .reconciler import Candidate, ReconcileOutcome, reconcile_candidate
from .scores import is_blank_score, normalize_score, parse_count
from .store import find_profile_by_email, normalize_email
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class SheetRow:
    number: int  # 1-based line number, header is line 1
    values: dict[str, str]

    def get(self, field: str) -> str | None:
        value = self.values.get(field)
        if value is None:
            return None
        value = value.strip()
        return value or None


def sheet_payload(row: SheetRow) -> dict[str, Any]:
    return {"row_number": row.number, **row.values}


def read_sheet(csv_text: str, profile: ImportProfile) -> tuple[dict[str, int], list[SheetRow]]:
    """Parse CSV text into logical-field rows. Blank lines are dropped."""
    if not csv_text or not csv_text.strip():
        raise MalformedInputError("CSV text is empty")

    reader = csv.reader(io.StringIO(csv_text.strip()))
    try:
        headers = next(reader)
    except (StopIteration, csv.Error) as exc:
        raise MalformedInputError(f"Could not read CSV header: {exc}") from exc

    columns = resolve_columns(headers, profile)
    rows: list[SheetRow] = []
    try:
        for line_number, fields in enumerate(reader, start=2):
            if not any(f.strip() for f in fields):
                continue
            values = {
                logical: fields[index] if index < len(fields) else ""
                for logical, index in columns.items()
            }
            rows.append(SheetRow(number=line_number, values=values))
    except csv.Error as exc:
        raise MalformedInputError(f"Malformed CSV: {exc}") from exc
    return columns, rows


async def resolve_subject(db: AsyncSession, row: SheetRow) -> tuple[str, str | None, str | None]:
    """(subject_id, email, display_name) from an explicit id or a profile lookup by email."""
    email = normalize_email(row.get("subject_email"))
    name = row.get("subject_name")
    subject_id = row.get("subject_id")
    if subject_id:
        return subject_id, email, name

    if email:
        profile = await find_profile_by_email(db, email)
        if profile is not None:
            return profile.subject_id, email, name or profile.display_name
        raise UnresolvedIdentityError(f"Row {row.number}: no known subject for {email}")
    raise UnresolvedIdentityError(f"Row {row.number}: no subject id or email")


def _email_allowed(email: str | None, allowed: set[str]) -> bool:
    if not allowed:
        return True
    if not email or "@" not in email:
        return False
    return email.rsplit("@", 1)[1] in allowed


async def _row_candidate(
    db: AsyncSession,
    row: SheetRow,
    profile: ImportProfile,
    allowed_domains: set[str],
) -> Candidate:
    subject_id, email, name = await resolve_subject(db, row)
    if not _email_allowed(email, allowed_domains):
        raise MalformedInputError(f"Row {row.number}: {email or 'missing email'} is outside the allowed domains")

    raw_kind = row.get("event_kind")
    kind = canonical_kind(raw_kind) if raw_kind else profile.default_kind
    if kind is None:
        raise MalformedInputError(f"Row {row.number}: unknown event kind '{raw_kind}'")

    occurred_at = parse_timestamp(row.get("occurred_at"))
    if occurred_at is None:
        raise MalformedInputError(f"Row {row.number}: unreadable date '{row.get('occurred_at')}'")

    correct = parse_count(row.get("correct_count"))
    incorrect = parse_count(row.get("incorrect_count"))
    total_questions = parse_count(row.get("total_questions"))
    if incorrect is None and correct is not None and total_questions is not None and total_questions >= correct:
        incorrect = total_questions - correct

    return Candidate(
        subject_id=subject_id,
        subject_email=email,
        subject_display_name=name,
        event_kind=kind,
        occurred_at=occurred_at,
        source=SourceTag.CSV_IMPORT,
        course_id=row.get("course_id"),
        course_name=row.get("course_name"),
        content_id=row.get("content_id"),
        content_title=row.get("content_title"),
        attempt_number=parse_count(row.get("attempt_number")),
        raw_score=row.get("score"),
        correct_count=correct,
        incorrect_count=incorrect,
        raw_payload=sheet_payload(row),
    )


def assign_attempt_numbers(candidates: list[tuple[SheetRow, Candidate]]) -> None:
    """Number quiz attempts per (subject, content, course) in time order."""
    groups: dict[tuple[str, str, str], list[tuple[SheetRow, Candidate]]] = defaultdict(list)
    for row, candidate in candidates:
        if candidate.event_kind != EventKind.QUIZ_ATTEMPTED:
            continue
        content = candidate.content_id or (candidate.content_title or "").casefold()
        course = candidate.course_id or (candidate.course_name or "").casefold()
        groups[(candidate.subject_id, content, course)].append((row, candidate))

    for members in groups.values():
        members.sort(key=lambda item: (item[1].occurred_at, item[0].number))
        for position, (_, candidate) in enumerate(members, start=1):
            candidate.attempt_number = position


async def import_spreadsheet(
    db: AsyncSession,
    csv_text: str,
    profile_name: str | None = "activity",
    *,
    allowed_domains: set[str] | None = None,
) -> ImportReport:
    """Import a spreadsheet. Header problems raise MalformedInputError; row
    problems are reported and the rest of the sheet is still processed."""
    profile = get_profile(profile_name)
    if allowed_domains is None:
        allowed_domains = settings.allowed_email_domains

    columns, rows = read_sheet(csv_text, profile)
    report = ImportReport(profile=profile.name, total=len(rows), score_column_detected="score" in columns)

    candidates: list[tuple[SheetRow, Candidate]] = []
    for row in rows:
        try:
            candidate = await _row_candidate(db, row, profile, allowed_domains)
        except LedgerError as exc:
            report.rejected += 1
            report.note(exc.message)
            logger.warning("Rejected spreadsheet row: %s", exc.message)
            continue

        raw_score = row.get("score")
        if report.score_column_detected and not is_blank_score(raw_score):
            if normalize_score(raw_score, fractions=settings.score_fractions_enabled) is None:
                report.score_parse_failures += 1
        candidates.append((row, candidate))

    if "attempt_number" not in columns:
        assign_attempt_numbers(candidates)

    for row, candidate in candidates:
        try:
            result = await reconcile_candidate(db, candidate)
        except LedgerError as exc:
            report.add_error(f"Row {row.number}: {exc.message}")
            continue
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.warning("Storing spreadsheet row %d failed: %s", row.number, exc)
            report.add_error(f"Row {row.number}: could not be stored ({type(exc).__name__})")
            continue
        if result.outcome == ReconcileOutcome.RECORDED:
            report.recorded += 1
        elif result.outcome == ReconcileOutcome.DUPLICATE:
            report.duplicates += 1
        else:
            report.soft_duplicates += 1

    logger.info(
        "Spreadsheet import (%s): %d rows, %d recorded, %d duplicates, %d soft duplicates, %d rejected",
        profile.name,
        report.total,
        report.recorded,
        report.duplicates,
        report.soft_duplicates,
        report.rejected,
    )
    return report
