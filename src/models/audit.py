"""AuditLog model — immutable audit trail for every system event.

Every action in the system emits a SystemEvent which is persisted here.
This table is append-only — no updates or deletes. Payloads never carry
raw PII or key material.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, RowStampMixin


class AuditLog(RowStampMixin, Base):
    """Immutable audit trail entry."""

    __tablename__ = "audit_log"

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(64), index=True)
    actor: Mapped[str | None] = mapped_column(String(100), comment="'system', 'client' or a module name")
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} session={self.session_id}>"
