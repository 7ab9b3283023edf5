"""Score normalization shared by every ingestion path."""

from __future__ import annotations

import math
from typing import Any

_MISSING_MARKERS = {"", "na", "n/a"}


def is_blank_score(raw: Any) -> bool:
    """True for values that mean "no score" rather than an unreadable one."""
    if raw is None:
        return True
    return isinstance(raw, str) and raw.strip().lower() in _MISSING_MARKERS


def normalize_score(raw: Any, *, fractions: bool = True) -> float | None:
    """Convert a raw score to the 0-100 scale, or None when unknown.

    Accepts numbers and strings such as "70", "70%", "0.7", "NA". Values
    strictly between 0 and 1 are read as fractions when `fractions` is on.
    Negative values and values above 100 are corrupt input and yield None.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if text.lower() in _MISSING_MARKERS:
            return None
        if text.endswith("%"):
            text = text[:-1].strip()
        try:
            value = float(text)
        except ValueError:
            return None
    else:
        return None

    if math.isnan(value) or math.isinf(value):
        return None

    if fractions and 0 < value < 1:
        value = value * 100

    if 0 <= value <= 100:
        return round(value, 6)
    return None


def parse_count(raw: Any) -> int | None:
    """Parse a non-negative integer count; anything else is None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, float):
        if math.isnan(raw) or not raw.is_integer():
            return None
        return int(raw) if raw >= 0 else None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
        return parse_count(value)
    return None
