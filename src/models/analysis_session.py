"""AnalysisSession model — one policy analysis request and its lifecycle.

Single writer: the processing orchestrator. Readers: progress publisher
and results endpoints. `expired` is never stored; it is derived from
expires_at at read time.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, RowStampMixin


class AnalysisSession(RowStampMixin, Base):
    """Durable session record (status, stage progress, terminal payload)."""

    __tablename__ = "analysis_sessions"

    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="SessionStatus enum value")
    jurisdiction: Mapped[str] = mapped_column(String(8), nullable=False)

    # Progress
    stage: Mapped[str | None] = mapped_column(String(30), comment="PipelineStage enum value")
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    eta_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Anonymization summary (never raw PII)
    pii_detected: Mapped[bool | None] = mapped_column(Boolean)
    detection_confidence: Mapped[float | None] = mapped_column(Float)

    # Terminal payloads — each set exactly once
    results: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    error_detail: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    # Lifetime
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_update_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<AnalysisSession {self.session_id} status={self.status} stage={self.stage}>"
