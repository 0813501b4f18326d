"""PIIVaultEntry model — encrypted token→value map for one session.

The payload is sealed with a key derived from the session secret, which is
never stored here. Purging wipes the payload and leaves a tombstone row so
a late write from an in-flight pipeline cannot resurrect the data.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, RowStampMixin


class PIIVaultEntry(RowStampMixin, Base):
    """At most one row per session."""

    __tablename__ = "pii_vault_entries"

    session_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    encrypted_payload: Mapped[str | None] = mapped_column(Text, comment="base64(nonce || ciphertext || tag)")
    encryption_salt: Mapped[str | None] = mapped_column(String(64), comment="base64 PBKDF2 salt")
    algorithm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    categories: Mapped[str | None] = mapped_column(String(500), comment="Comma-separated PIICategory values")
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    purged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<PIIVaultEntry session={self.session_id} purged={self.purged_at is not None}>"
