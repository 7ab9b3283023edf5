"""Activity ledger configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class LedgerSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///ledger.db"
    echo_sql: bool = False
    app_title: str = "Activity Ledger"

    # Inbound webhook auth (both optional; HMAC wins when set)
    webhook_signing_secret: str = ""
    webhook_api_key: str = ""

    # LMS read APIs
    lms_subdomain: str = ""
    lms_api_key: str = ""
    lms_access_token: str = ""
    lms_rest_base_url: str = "https://api.thinkific.com/api/public/v1"
    lms_graphql_url: str = "https://api.thinkific.com/stable/graphql"
    lms_timeout_seconds: float = 30.0
    lms_max_retries: int = 4
    lms_backoff_initial_seconds: float = 1.0
    lms_backoff_multiplier: float = 2.0
    lms_backoff_max_seconds: float = 30.0
    lms_page_size: int = 100
    lms_max_pages: int = 200

    # Reconciliation
    soft_duplicate_tolerance_seconds: int = 300
    # Comma-separated source tags a backfill/CSV candidate is soft-matched against.
    soft_match_sources: str = "webhook"
    score_fractions_enabled: bool = True
    backfill_max_workers: int = 4
    # Comma-separated; empty allows every domain.
    import_allowed_email_domains: str = ""
    report_max_errors: int = 20

    # Repair jobs
    repair_batch_size: int = 100
    repair_batch_delay_seconds: float = 0.5

    # Scheduled backfill (off unless group ids are configured)
    backfill_schedule_enabled: bool = False
    backfill_schedule_group_ids: str = ""
    backfill_schedule_interval_seconds: float = 3600.0

    # Assignment-completion tracker
    completion_hook_url: str = ""
    completion_hook_timeout_seconds: float = 10.0

    model_config = {"env_prefix": "LEDGER_", "env_file": ".env", "extra": "ignore"}

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent

    @property
    def soft_match_source_set(self) -> set[str]:
        return _split_csv(self.soft_match_sources)

    @property
    def allowed_email_domains(self) -> set[str]:
        return {d.lstrip("@") for d in _split_csv(self.import_allowed_email_domains)}

    @property
    def scheduled_group_ids(self) -> list[str]:
        return sorted(_split_csv(self.backfill_schedule_group_ids, lower=False))

    @property
    def lms_configured(self) -> bool:
        return bool(self.lms_subdomain and (self.lms_api_key or self.lms_access_token))

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


def _split_csv(raw: str, *, lower: bool = True) -> set[str]:
    """Parse a comma-separated setting into a set, lower-cased when `lower` is set."""
    items: set[str] = set()
    if not raw.strip():
        return items
    for item in raw.split(","):
        value = item.strip()
        if lower:
            value = value.lower()
        if value:
            items.add(value)
    return items


settings = LedgerSettings()
