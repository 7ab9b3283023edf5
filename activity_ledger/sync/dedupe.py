"""Dedupe key derivation.

A key is either strong (derived from an identifier the source assigned to
the occurrence itself) or weak (a content hash). Weak keys collapse two
distinct occurrences that share every hashed field, so call sites keep the
variant around instead of flattening it to a string early.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from .timestamps import canonical_timestamp

WEBHOOK_NAMESPACE = "wh"

_WEAK_KEY_LENGTH = 32


@dataclass(frozen=True)
class StrongKey:
    namespace: str
    source_id: str

    is_strong = True

    @property
    def value(self) -> str:
        return f"{self.namespace}:{self.source_id}"

    @property
    def strength(self) -> str:
        return "strong"


@dataclass(frozen=True)
class WeakKey:
    digest: str

    is_strong = False

    @property
    def value(self) -> str:
        return self.digest

    @property
    def strength(self) -> str:
        return "weak"


DedupeKey = Union[StrongKey, WeakKey]


def _component(identifier: str | None, fallback: str | None, prefix: str) -> str:
    if identifier is not None and str(identifier).strip():
        return str(identifier).strip()
    if fallback and fallback.strip():
        return f"{prefix}:{fallback.strip().lower()}"
    return "none"


def content_hash(
    kind: str,
    subject_id: str,
    content_id: str | None,
    course_id: str | None,
    occurred_at: datetime,
    *,
    content_title: str | None = None,
    course_name: str | None = None,
) -> str:
    parts = [
        kind,
        str(subject_id).strip(),
        _component(content_id, content_title, "title"),
        _component(course_id, course_name, "name"),
        canonical_timestamp(occurred_at),
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:_WEAK_KEY_LENGTH]


def derive_dedupe_key(
    kind: str,
    subject_id: str,
    content_id: str | None,
    course_id: str | None,
    occurred_at: datetime,
    source_stable_id: str | None = None,
    *,
    namespace: str | None = None,
    content_title: str | None = None,
    course_name: str | None = None,
) -> DedupeKey:
    """Compute the identity of an occurrence.

    A stable id always wins and must come with the namespace of its id space.
    Weak keys are never namespaced so every path hashing the same occurrence
    lands on the same key.
    """
    if source_stable_id is not None and str(source_stable_id).strip():
        if not namespace:
            raise ValueError("A stable source id needs the namespace of its id space")
        return StrongKey(namespace=namespace, source_id=str(source_stable_id).strip())

    return WeakKey(
        digest=content_hash(
            kind,
            subject_id,
            content_id,
            course_id,
            occurred_at,
            content_title=content_title,
            course_name=course_name,
        )
    )
