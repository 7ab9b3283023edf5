"""Raw webhook delivery preservation.

Every delivery with a delivery ID lands here before any parsing, so the
forensic trail does not depend on whether the payload was understood.
`delivery_id` is deliberately not unique: two racing redeliveries may both
append a row.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UUIDMixin, TimestampMixin


class RawSourceLog(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "raw_source_log"

    delivery_id: Mapped[str] = mapped_column(String(100), index=True)
    topic: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payload_json: Mapped[dict] = mapped_column(JSON)
