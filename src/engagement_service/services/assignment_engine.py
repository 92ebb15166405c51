"""
Deterministic provider scoring.

Pure functions only: the same requirements, candidates, and configuration
always produce the same ranking. Nothing here reads the clock or the store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from engagement_service.config import ScoringConfig
    from engagement_service.models import Provider, Urgency

SCORE_PRECISION = 6


@dataclass(frozen=True)
class AssignmentRequirements:
    """What the request asks of a provider."""

    category: str
    urgency: Urgency
    budget_hint: int | None = None


@dataclass(frozen=True)
class ScoreBreakdown:
    """Weighted contribution of each component to the final score."""

    specialization: float
    experience: float
    rating: float
    reputation: float
    availability: float
    budget_fit: float

    @property
    def total(self) -> float:
        return round(
            self.specialization
            + self.experience
            + self.rating
            + self.reputation
            + self.availability
            + self.budget_fit,
            SCORE_PRECISION,
        )

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class ScoredCandidate:
    provider_id: str
    score: float
    breakdown: ScoreBreakdown
    active_count: int
    max_active: int
    verified_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "score": self.score,
            "breakdown": self.breakdown.to_dict(),
            "active_count": self.active_count,
            "max_active": self.max_active,
        }


@dataclass(frozen=True)
class AssignmentResult:
    """Outcome of scoring a candidate pool."""

    selected: ScoredCandidate | None
    alternatives: tuple[ScoredCandidate, ...] = ()
    excluded: dict[str, str] = field(default_factory=dict)
    manual_required: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected": None if self.selected is None else self.selected.to_dict(),
            "alternatives": [candidate.to_dict() for candidate in self.alternatives],
            "excluded": dict(self.excluded),
            "manual_required": self.manual_required,
            "reason": self.reason,
        }


def exclusion_reason(provider: Provider) -> str | None:
    """Why a provider may not be proposed, or None when eligible."""
    if not provider.is_verified:
        return "unverified"
    if not provider.available:
        return "unavailable"
    if not provider.has_capacity:
        return "at_capacity"
    return None


def _specialization_match(
    provider: Provider, category: str, secondary_factor: float
) -> float:
    if not provider.specializations:
        return 0.0
    if provider.specializations[0] == category:
        return 1.0
    if category in provider.specializations[1:]:
        return secondary_factor
    return 0.0


def _budget_fit(
    base_fee: int | None,
    budget_hint: int | None,
    band_pct: float,
    near_factor: float,
) -> float:
    if base_fee is None or budget_hint is None:
        return 0.0
    if base_fee <= budget_hint:
        return 1.0
    if base_fee * 100 <= budget_hint * (100 + band_pct):
        return near_factor
    return 0.0


def score_provider(
    provider: Provider,
    requirements: AssignmentRequirements,
    config: ScoringConfig,
) -> ScoreBreakdown:
    """Score one provider against the requirements."""
    weights = config.weights
    load = provider.load
    urgency_penalty = config.urgency_penalty[requirements.urgency.value]
    cap = config.experience_cap_years

    return ScoreBreakdown(
        specialization=round(
            weights.specialization
            * _specialization_match(
                provider, requirements.category, config.secondary_match_factor
            ),
            SCORE_PRECISION,
        ),
        experience=round(
            weights.experience * min(provider.experience_years, cap) / cap,
            SCORE_PRECISION,
        ),
        rating=round(weights.rating * provider.rating / 5, SCORE_PRECISION),
        reputation=round(weights.reputation * provider.reputation / 5, SCORE_PRECISION),
        availability=round(
            weights.availability * (1 - load) - urgency_penalty * load,
            SCORE_PRECISION,
        ),
        budget_fit=round(
            weights.budget_fit
            * _budget_fit(
                provider.base_fee,
                requirements.budget_hint,
                config.budget_band_pct,
                config.near_budget_factor,
            ),
            SCORE_PRECISION,
        ),
    )


def _ranking_key(candidate: ScoredCandidate) -> tuple[float, int, str, str]:
    # Highest score, then lightest load, then longest verified, then ID.
    return (
        -candidate.score,
        candidate.active_count,
        candidate.verified_at,
        candidate.provider_id,
    )


def rank_candidates(
    requirements: AssignmentRequirements,
    candidates: Sequence[Provider],
    config: ScoringConfig,
) -> tuple[list[ScoredCandidate], dict[str, str]]:
    """Score eligible candidates and return them best first, plus exclusions."""
    excluded: dict[str, str] = {}
    scored: list[ScoredCandidate] = []
    for provider in candidates:
        reason = exclusion_reason(provider)
        if reason is not None:
            excluded[provider.provider_id] = reason
            continue
        breakdown = score_provider(provider, requirements, config)
        scored.append(
            ScoredCandidate(
                provider_id=provider.provider_id,
                score=breakdown.total,
                breakdown=breakdown,
                active_count=provider.active_count,
                max_active=provider.max_active,
                verified_at=provider.verified_at or "",
            )
        )
    scored.sort(key=_ranking_key)
    return scored, excluded


def score_candidates(
    requirements: AssignmentRequirements,
    candidates: Sequence[Provider],
    config: ScoringConfig,
) -> AssignmentResult:
    """
    Pick the best candidate for the requirements.

    A proposal is made only when the best score reaches
    ``config.min_auto_assign_score``; otherwise the result asks for manual
    assignment and still lists the ranked candidates as alternatives.
    """
    ranked, excluded = rank_candidates(requirements, candidates, config)
    if not ranked:
        return AssignmentResult(
            selected=None,
            excluded=excluded,
            manual_required=True,
            reason="no_eligible_candidates",
        )

    best = ranked[0]
    if best.score < config.min_auto_assign_score:
        return AssignmentResult(
            selected=None,
            alternatives=tuple(ranked[: config.max_alternatives]),
            excluded=excluded,
            manual_required=True,
            reason="below_minimum_score",
        )

    return AssignmentResult(
        selected=best,
        alternatives=tuple(ranked[1 : 1 + config.max_alternatives]),
        excluded=excluded,
    )
