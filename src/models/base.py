"""Declarative base for the PolicyLens tables.

Each table carries a UUID surrogate key plus `created_at` / `updated_at`
stamped by PostgreSQL. These are row bookkeeping only: the timestamps the
pipeline reasons about (opened_at, stored_at, recorded_at, expires_at) come
from the injected clock. The consent ledger also orders versions recorded
in the same instant by `created_at`.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """All `Mapped[datetime]` columns are timezone-aware."""

    type_annotation_map = {datetime: DateTime(timezone=True)}


class RowStampMixin:
    """Surrogate key and server-side row stamps, matching `_base_columns` in the initial migration."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())
