"""Session, progress and analysis-result schemas.

SessionRecord is the storage-agnostic view both session store backends
return. The policy types mirror what the analysis collaborator produces
and the scoring function consumes.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.models.enums import (
    ExcessCategory,
    PipelineStage,
    PolicyTier,
    PolicyType,
    PremiumCategory,
    SessionStatus,
)
from src.schemas.base import ApiModel

# ── Policy domain ────────────────────────────────────────────────────


class PolicyFeatures(ApiModel):
    """Structured features of a policy, extracted from anonymized text."""

    policy_type: PolicyType
    policy_tier: PolicyTier
    premium_category: PremiumCategory
    excess_category: ExcessCategory
    hospital_features: list[str] = Field(default_factory=list)
    extras_features: list[str] = Field(default_factory=list)
    waiting_periods: dict[str, str] = Field(default_factory=dict, description="e.g. {'hospital_services': '12 months'}")
    exclusions: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


class PriceBand(ApiModel):
    min: float
    max: float


class PremiumRange(ApiModel):
    """Monthly premium ranges by cover type."""

    single: PriceBand
    couple: PriceBand
    family: PriceBand


class ProviderPolicy(ApiModel):
    id: str
    provider_code: str
    provider_name: str
    policy_name: str
    policy_type: PolicyType
    policy_tier: PolicyTier
    premium_range: PremiumRange
    features: PolicyFeatures
    website_url: str | None = None
    contact_phone: str | None = None


class ComparisonResult(ApiModel):
    """One ranked candidate with its score breakdown."""

    policy: ProviderPolicy
    overall_score: float = Field(ge=0.0, le=1.0)
    feature_match_score: float = Field(ge=0.0, le=1.0)
    cost_efficiency_score: float = Field(ge=0.0, le=1.0)
    waiting_period_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)
    coverage_improvements: list[str] = Field(default_factory=list)
    potential_drawbacks: list[str] = Field(default_factory=list)


class AnalysisResults(ApiModel):
    """Final payload stored once on a completed session."""

    session_id: str
    jurisdiction: str
    user_policy_features: PolicyFeatures
    recommendations: list[ComparisonResult]
    total_policies_compared: int
    processing_time_ms: int
    confidence: float = Field(ge=0.0, le=1.0)
    pii_detected: bool
    detection_confidence: float
    generated_at: datetime


# ── Session state ────────────────────────────────────────────────────


class ErrorDetail(ApiModel):
    """Terminal failure. Only user-safe text; the underlying cause is logged, never stored."""

    stage: PipelineStage | None = None
    code: str
    message: str
    hint: str | None = None


class SessionRecord(ApiModel):
    """Stored session state. `status` is the stored value, never EXPIRED."""

    session_id: str
    status: SessionStatus
    jurisdiction: str
    stage: PipelineStage | None = None
    progress_percent: int = 0
    eta_seconds: int = 0
    pii_detected: bool | None = None
    detection_confidence: float | None = None
    results: AnalysisResults | None = None
    error_detail: ErrorDetail | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    deleted_at: datetime | None = None


class ProgressSnapshot(ApiModel):
    """What poll and stream clients see."""

    session_id: str
    status: SessionStatus
    stage: PipelineStage | None
    progress_percent: int
    estimated_time_remaining_seconds: int
    is_complete: bool
    error: ErrorDetail | None = None
    updated_at: datetime
