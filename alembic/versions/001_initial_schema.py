"""Initial schema — sessions, PII vault, consent ledger, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "analysis_sessions",
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, comment="SessionStatus enum value"),
        sa.Column("jurisdiction", sa.String(8), nullable=False),
        sa.Column("stage", sa.String(30), comment="PipelineStage enum value"),
        sa.Column("progress_percent", sa.Integer(), nullable=False),
        sa.Column("eta_seconds", sa.Integer(), nullable=False),
        sa.Column("pii_detected", sa.Boolean()),
        sa.Column("detection_confidence", sa.Float()),
        sa.Column("results", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("error_detail", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_update_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analysis_sessions_session_id", "analysis_sessions", ["session_id"], unique=True)
    op.create_index("ix_analysis_sessions_expires_at", "analysis_sessions", ["expires_at"])

    op.create_table(
        "pii_vault_entries",
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("encrypted_payload", sa.Text(), comment="base64(nonce || ciphertext || tag)"),
        sa.Column("encryption_salt", sa.String(64), comment="base64 PBKDF2 salt"),
        sa.Column("algorithm_id", sa.String(50), nullable=False),
        sa.Column("categories", sa.String(500), comment="Comma-separated PIICategory values"),
        sa.Column("stored_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("purged_at", sa.DateTime(timezone=True)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pii_vault_entries_session_id", "pii_vault_entries", ["session_id"], unique=True)
    op.create_index("ix_pii_vault_entries_expires_at", "pii_vault_entries", ["expires_at"])

    op.create_table(
        "consent_records",
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("choices", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("reason", sa.String(100), comment="e.g. 'data-deletion'"),
        sa.Column("source_ip_hash", sa.String(32), comment="Keyed SHA-256, truncated"),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_consent_records_session_id", "consent_records", ["session_id"])
    op.create_index("ix_consent_records_recorded_at", "consent_records", ["recorded_at"])

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("session_id", sa.String(64)),
        sa.Column("actor", sa.String(100), comment="'system', 'client' or a module name"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_event_type", "audit_log", ["event_type"])
    op.create_index("ix_audit_log_session_id", "audit_log", ["session_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("consent_records")
    op.drop_table("pii_vault_entries")
    op.drop_table("analysis_sessions")
