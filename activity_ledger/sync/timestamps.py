"""Timestamp parsing for webhook, API and spreadsheet inputs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

# Spreadsheet exports seen in the wild, tried after ISO-8601.
_CSV_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y",
    "%B %d, %Y %H:%M",
    "%B %d, %Y",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values (SQLite returns naive datetimes)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse ISO strings, common CSV formats or epoch seconds into aware UTC."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, (int, float)):
        seconds = float(raw)
        # Millisecond epochs show up in some exports.
        if seconds > 1e11:
            seconds = seconds / 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str):
        return None

    text = raw.strip()
    if not text:
        return None
    if text.isdigit():
        return parse_timestamp(int(text))

    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    cleaned = text.removesuffix(" UTC").strip()
    for fmt in _CSV_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def canonical_timestamp(value: datetime) -> str:
    """Second-precision UTC string used inside content-hash keys."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
