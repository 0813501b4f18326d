"""Policy scoring — ranks catalog candidates against extracted features.

Pure Python. No DB access, no LLM calls, no randomness: the same
features and catalog always produce the same ranking.

    overall = 0.5 × feature match + 0.3 × cost efficiency + 0.2 × waiting periods

Usage:
    ranked = rank(features, catalog.for_jurisdiction("AU"), top_n=5)
    confidence = overall_confidence(ranked)
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from src.models.enums import ExcessCategory, PremiumCategory
from src.schemas.session import ComparisonResult, PolicyFeatures, ProviderPolicy

FEATURE_WEIGHT = 0.5
COST_WEIGHT = 0.3
WAITING_WEIGHT = 0.2

# Penalty per premium band above the user's current band
_BAND_PENALTY = 0.25
# Used when neither policy states a comparable waiting period
_NEUTRAL_WAITING_SCORE = 0.8
_BASE_CONFIDENCE = 0.85
_LOW_CONFIDENCE = 0.6

_PREMIUM_ORDER: tuple[PremiumCategory, ...] = tuple(PremiumCategory)
_EXCESS_ORDER: tuple[ExcessCategory, ...] = tuple(ExcessCategory)

_PERIOD = re.compile(r"(\d+(?:\.\d+)?)\s*(day|week|month|year)s?", re.IGNORECASE)
_MONTHS_PER_UNIT = {"day": 1 / 30, "week": 12 / 52, "month": 1.0, "year": 12.0}


def parse_months(period: str) -> float | None:
    """'12 months' → 12.0, '1 year' → 12.0, 'none' → 0.0. None if unparseable."""
    text = period.strip().lower()
    if text in ("none", "nil", "no waiting period", "0"):
        return 0.0
    match = _PERIOD.search(text)
    if match is None:
        return None
    return float(match.group(1)) * _MONTHS_PER_UNIT[match.group(2).lower()]


def _humanize(feature: str) -> str:
    return feature.replace("_", " ")


# ── Component scores ─────────────────────────────────────────────────


def feature_match_score(user: PolicyFeatures, candidate: PolicyFeatures) -> float:
    """Share of the user's hospital and extras features the candidate also covers."""
    total = len(user.hospital_features) + len(user.extras_features)
    if total == 0:
        return 0.0
    matched = sum(1 for f in user.hospital_features if f in candidate.hospital_features)
    matched += sum(1 for f in user.extras_features if f in candidate.extras_features)
    return matched / total


def cost_efficiency_score(user: PolicyFeatures, candidate: PolicyFeatures) -> float:
    """1.0 for the same or a cheaper premium band, minus a penalty per band above it."""
    steps = _PREMIUM_ORDER.index(candidate.premium_category) - _PREMIUM_ORDER.index(user.premium_category)
    return max(0.0, 1.0 - _BAND_PENALTY * max(steps, 0))


def waiting_period_score(user: PolicyFeatures, candidate: PolicyFeatures) -> float:
    """Mean per-service score over services both policies state a period for."""
    scores: list[float] = []
    for service, period in user.waiting_periods.items():
        if service not in candidate.waiting_periods:
            continue
        current = parse_months(period)
        offered = parse_months(candidate.waiting_periods[service])
        if current is None or offered is None:
            continue
        if offered <= current:
            scores.append(1.0)
        else:
            scores.append(max(0.0, 1.0 - (offered - current) / 12))
    if not scores:
        return _NEUTRAL_WAITING_SCORE
    return sum(scores) / len(scores)


# ── Explanations ─────────────────────────────────────────────────────


def _reasoning(user: PolicyFeatures, candidate: ProviderPolicy, feature: float, cost: float) -> list[str]:
    reasons: list[str] = []
    total = len(user.hospital_features) + len(user.extras_features)
    if total:
        reasons.append(f"Covers {round(feature * total)} of your {total} current features")
    if cost == 1.0:
        reasons.append("Premium band is the same as or lower than your current policy")
    else:
        reasons.append(f"Premium band {candidate.features.premium_category.value} is higher than your current one")
    if candidate.policy_tier == user.policy_tier:
        reasons.append(f"Same {user.policy_tier.value} tier as your current policy")
    return reasons


def _improvements(user: PolicyFeatures, candidate: PolicyFeatures) -> list[str]:
    gained = [f for f in candidate.hospital_features if f not in user.hospital_features]
    gained += [f for f in candidate.extras_features if f not in user.extras_features]
    improvements = [f"Adds {_humanize(f)}" for f in gained]
    if _EXCESS_ORDER.index(candidate.excess_category) < _EXCESS_ORDER.index(user.excess_category):
        improvements.append("Lower hospital excess")
    return improvements


def _drawbacks(user: PolicyFeatures, candidate: PolicyFeatures) -> list[str]:
    lost = [f for f in user.hospital_features if f not in candidate.hospital_features]
    lost += [f for f in user.extras_features if f not in candidate.extras_features]
    drawbacks = [f"Does not cover {_humanize(f)}" for f in lost]
    if _EXCESS_ORDER.index(candidate.excess_category) > _EXCESS_ORDER.index(user.excess_category):
        drawbacks.append("Higher hospital excess")
    for service, period in candidate.waiting_periods.items():
        current = parse_months(user.waiting_periods.get(service, ""))
        offered = parse_months(period)
        if current is not None and offered is not None and offered > current:
            drawbacks.append(f"Longer waiting period for {_humanize(service)} ({period})")
    drawbacks += [f"Excludes {_humanize(e)}" for e in candidate.exclusions if e not in user.exclusions]
    return drawbacks


# ── Public API ───────────────────────────────────────────────────────


def score(user: PolicyFeatures, candidate: ProviderPolicy) -> ComparisonResult:
    """Score one candidate against the user's current policy features."""
    feature = feature_match_score(user, candidate.features)
    cost = cost_efficiency_score(user, candidate.features)
    waiting = waiting_period_score(user, candidate.features)
    overall = FEATURE_WEIGHT * feature + COST_WEIGHT * cost + WAITING_WEIGHT * waiting

    has_features = bool(user.hospital_features or user.extras_features)
    return ComparisonResult(
        policy=candidate,
        overall_score=round(overall, 4),
        feature_match_score=round(feature, 4),
        cost_efficiency_score=round(cost, 4),
        waiting_period_score=round(waiting, 4),
        confidence=_BASE_CONFIDENCE if has_features else _LOW_CONFIDENCE,
        reasoning=_reasoning(user, candidate, feature, cost),
        coverage_improvements=_improvements(user, candidate.features),
        potential_drawbacks=_drawbacks(user, candidate.features),
    )


def rank(user: PolicyFeatures, candidates: Iterable[ProviderPolicy], top_n: int | None = None) -> list[ComparisonResult]:
    """Score all candidates; best overall score first, ties broken by confidence then id."""
    results = [score(user, c) for c in candidates]
    results.sort(key=lambda r: (-r.overall_score, -r.confidence, r.policy.id))
    return results[:top_n] if top_n is not None else results


def overall_confidence(recommendations: list[ComparisonResult]) -> float:
    """Mean candidate confidence scaled by the top score, capped at 1.0."""
    if not recommendations:
        return 0.0
    average = sum(r.confidence for r in recommendations) / len(recommendations)
    return round(min(average * (recommendations[0].overall_score + 0.3), 1.0), 4)
