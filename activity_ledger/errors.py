"""Ledger error taxonomy.

Duplicate occurrences are outcomes, not errors (see
`sync.reconciler.ReconcileOutcome`), and ambiguous repair matches are report
records (`schemas.reports.AmbiguousMatch`).
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for ledger errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class MalformedInputError(LedgerError):
    """Unparseable payload, row, or upload. Dropped, never partially stored."""

    pass


class UnresolvedIdentityError(LedgerError):
    """No subject identifier could be determined for an occurrence."""

    pass


class UpstreamError(LedgerError):
    """Base exception for LMS API errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class UpstreamTransientError(UpstreamError):
    """Rate limit, 5xx or transport failure that survived every retry."""

    pass


class RateLimitError(UpstreamTransientError):
    """HTTP 429 from the LMS."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        response: dict | None = None,
        *,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code, response)


class UpstreamPermanentError(UpstreamError):
    """4xx other than 429. Never retried."""

    pass
