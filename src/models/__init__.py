"""SQLAlchemy ORM models for the policy analysis service.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from src.models.analysis_session import AnalysisSession
from src.models.audit import AuditLog
from src.models.base import Base
from src.models.consent import ConsentRecord
from src.models.enums import (
    PIICategory,
    PipelineStage,
    PolicyTier,
    PolicyType,
    PremiumCategory,
    ExcessCategory,
    RetentionWindow,
    ServiceErrorKind,
    SessionStatus,
)
from src.models.vault_entry import PIIVaultEntry

__all__ = [
    # Base
    "Base",
    # Models
    "AnalysisSession",
    "PIIVaultEntry",
    "ConsentRecord",
    "AuditLog",
    # Enums
    "SessionStatus",
    "PipelineStage",
    "PIICategory",
    "RetentionWindow",
    "ServiceErrorKind",
    "PolicyType",
    "PolicyTier",
    "PremiumCategory",
    "ExcessCategory",
]
