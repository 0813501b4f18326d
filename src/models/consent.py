"""ConsentRecord model — append-only consent ledger.

Every change (including a deletion request) inserts a new row. The current
consent for a session is the most recent row by recorded_at. Rows are kept
after data deletion; they describe consent about data, not the data itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, RowStampMixin


class ConsentRecord(RowStampMixin, Base):
    """An individual consent version for a session."""

    __tablename__ = "consent_records"

    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    choices: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(100), comment="e.g. 'data-deletion'")
    source_ip_hash: Mapped[str | None] = mapped_column(String(32), comment="HMAC-SHA256, truncated")
    user_agent: Mapped[str | None] = mapped_column(String(500))
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ConsentRecord session={self.session_id} reason={self.reason}>"
