"""Unit tests for the provider scoring functions."""

from __future__ import annotations

import pytest

from engagement_service.models import Urgency
from engagement_service.services.assignment_engine import (
    AssignmentRequirements,
    exclusion_reason,
    rank_candidates,
    score_candidates,
    score_provider,
)
from tests.helpers import make_provider, make_scoring_config

REQUIREMENTS = AssignmentRequirements(category="gst_filing", urgency=Urgency.NORMAL)


@pytest.mark.unit
def test_score_breakdown_for_idle_expert() -> None:
    """Primary match, half the experience cap, top reputation, no load."""
    provider = make_provider("p-1", experience_years=10, rating=4.5, reputation=5.0)

    breakdown = score_provider(provider, REQUIREMENTS, make_scoring_config())

    assert breakdown.specialization == pytest.approx(0.30)
    assert breakdown.experience == pytest.approx(0.075)
    assert breakdown.rating == pytest.approx(0.135)
    assert breakdown.reputation == pytest.approx(0.15)
    assert breakdown.availability == pytest.approx(0.15)
    assert breakdown.budget_fit == 0.0
    assert breakdown.total == pytest.approx(0.81)


@pytest.mark.unit
def test_secondary_specialization_scores_less() -> None:
    primary = make_provider("p-1", specializations=("gst_filing",))
    secondary = make_provider("p-2", specializations=("audit", "gst_filing"))
    unrelated = make_provider("p-3", specializations=("audit",))
    config = make_scoring_config()

    assert score_provider(primary, REQUIREMENTS, config).specialization == pytest.approx(0.30)
    assert score_provider(secondary, REQUIREMENTS, config).specialization == pytest.approx(0.21)
    assert score_provider(unrelated, REQUIREMENTS, config).specialization == 0.0


@pytest.mark.unit
def test_experience_is_capped() -> None:
    veteran = make_provider("p-1", experience_years=45)

    breakdown = score_provider(veteran, REQUIREMENTS, make_scoring_config())

    assert breakdown.experience == pytest.approx(0.15)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("base_fee", "expected"),
    [(80_000, 0.10), (100_000, 0.10), (115_000, 0.05), (130_000, 0.0), (None, 0.0)],
)
def test_budget_fit(base_fee, expected) -> None:
    provider = make_provider("p-1", base_fee=base_fee)
    requirements = AssignmentRequirements(
        category="gst_filing", urgency=Urgency.NORMAL, budget_hint=100_000
    )

    breakdown = score_provider(provider, requirements, make_scoring_config())

    assert breakdown.budget_fit == pytest.approx(expected)


@pytest.mark.unit
def test_urgency_penalises_loaded_providers_more() -> None:
    provider = make_provider("p-1", max_active=10, active_count=5)
    config = make_scoring_config()

    immediate = score_provider(
        provider, AssignmentRequirements("gst_filing", Urgency.IMMEDIATE), config
    )
    flexible = score_provider(
        provider, AssignmentRequirements("gst_filing", Urgency.FLEXIBLE), config
    )

    assert flexible.availability == pytest.approx(0.075)
    assert immediate.availability == pytest.approx(0.0)


@pytest.mark.unit
def test_exclusion_reasons() -> None:
    assert exclusion_reason(make_provider(verified_at=None)) == "unverified"
    assert exclusion_reason(make_provider(available=False)) == "unavailable"
    assert exclusion_reason(make_provider(max_active=15, active_count=15)) == "at_capacity"
    assert exclusion_reason(make_provider()) is None


@pytest.mark.unit
def test_best_candidate_selected_with_alternatives() -> None:
    strong = make_provider("p-strong", experience_years=20, rating=5.0)
    medium = make_provider("p-medium", experience_years=10)
    weak = make_provider("p-weak", experience_years=1, rating=3.0)
    full = make_provider("p-full", max_active=2, active_count=2)

    result = score_candidates(
        REQUIREMENTS, [weak, full, medium, strong], make_scoring_config(max_alternatives=1)
    )

    assert result.selected is not None
    assert result.selected.provider_id == "p-strong"
    assert [c.provider_id for c in result.alternatives] == ["p-medium"]
    assert result.excluded == {"p-full": "at_capacity"}
    assert result.manual_required is False


@pytest.mark.unit
def test_ties_break_on_verification_time_then_id() -> None:
    early = make_provider("p-b", verified_at="2023-01-01T00:00:00.000000Z")
    late = make_provider("p-a", verified_at="2024-06-01T00:00:00.000000Z")
    twin = make_provider("p-c", verified_at="2023-01-01T00:00:00.000000Z")

    ranked, _ = rank_candidates(REQUIREMENTS, [late, twin, early], make_scoring_config())

    assert [c.provider_id for c in ranked] == ["p-b", "p-c", "p-a"]


@pytest.mark.unit
def test_ranking_is_independent_of_input_order() -> None:
    pool = [
        make_provider(f"p-{index}", experience_years=index, active_count=index % 3)
        for index in range(8)
    ]
    config = make_scoring_config()

    forward = score_candidates(REQUIREMENTS, pool, config)
    backward = score_candidates(REQUIREMENTS, list(reversed(pool)), config)

    assert forward.to_dict() == backward.to_dict()


@pytest.mark.unit
def test_no_eligible_candidates_requires_manual_assignment() -> None:
    result = score_candidates(
        REQUIREMENTS, [make_provider("p-1", verified_at=None)], make_scoring_config()
    )

    assert result.selected is None
    assert result.manual_required is True
    assert result.reason == "no_eligible_candidates"
    assert result.excluded == {"p-1": "unverified"}


@pytest.mark.unit
def test_below_minimum_score_requires_manual_assignment() -> None:
    result = score_candidates(
        REQUIREMENTS,
        [make_provider("p-1"), make_provider("p-2", experience_years=2)],
        make_scoring_config(min_auto_assign_score=0.95),
    )

    assert result.selected is None
    assert result.manual_required is True
    assert result.reason == "below_minimum_score"
    assert [c.provider_id for c in result.alternatives] == ["p-1", "p-2"]
