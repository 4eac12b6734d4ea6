import pytest

from rawwire.core.config import DEFAULT_WEIGHTS
from rawwire.core.errors import ValidationError
from rawwire.services.scoring import (
    CriterionWeights,
    RecommendationThresholds,
    aggregate_score,
    ensure_batch,
    recommend,
    round_half_up,
)


def test_normalize_scales_weights_to_one_hundred() -> None:
    weights = CriterionWeights.normalize({"relevance": 3, "quality": 1})
    assert weights.weights == {"relevance": 75.0, "quality": 25.0}
    assert sum(weights.fractions().values()) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"relevance": -1, "quality": 50},
        {"relevance": 101},
        {"relevance": 0, "quality": 0},
        {"relevance": "high"},
    ],
)
def test_normalize_rejects_invalid_weights(raw) -> None:
    with pytest.raises(ValidationError):
        CriterionWeights.normalize(raw)


def test_restrict_renormalizes_subset_and_falls_back_to_equal_weights() -> None:
    weights = CriterionWeights.normalize(DEFAULT_WEIGHTS)
    restricted = weights.restrict(["relevance", "quality", "timeliness"])
    assert restricted.weights == pytest.approx({"relevance": 40.0, "quality": 100 / 3, "timeliness": 80 / 3})

    zeroed = CriterionWeights.normalize({"relevance": 100, "other": 0}).restrict(["other", "quality"])
    assert zeroed.weights == {"other": 50.0, "quality": 50.0}


def test_aggregate_score_is_weighted_mean_rounded_half_up() -> None:
    weights = CriterionWeights.normalize(DEFAULT_WEIGHTS)
    criteria = {"relevance": 80, "quality": 60, "timeliness": 40, "uniqueness": 50, "engagement": 70}
    # 61.5 rounds up
    assert aggregate_score(criteria, weights) == 62


def test_aggregate_score_uses_neutral_value_for_missing_criteria() -> None:
    weights = CriterionWeights.normalize({"relevance": 50, "quality": 50})
    assert aggregate_score({"relevance": 100}, weights) == 75
    assert aggregate_score({}, weights) == 50


def test_aggregate_score_clamps_out_of_range_criteria() -> None:
    weights = CriterionWeights.normalize({"relevance": 50, "quality": 50})
    assert aggregate_score({"relevance": 250, "quality": -40}, weights) == 50
    assert 0 <= aggregate_score({"relevance": 1000, "quality": 1000}, weights) <= 100


def test_aggregate_score_rejects_zero_total_weight() -> None:
    with pytest.raises(ValidationError):
        aggregate_score({"relevance": 10}, {"relevance": 0.0})


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
def test_aggregate_score_rejects_non_finite_criteria(value: float) -> None:
    with pytest.raises(ValidationError):
        aggregate_score({"relevance": value}, {"relevance": 1.0})


def test_round_half_up() -> None:
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2


def test_recommend_uses_thresholds() -> None:
    assert recommend(70) == "approve"
    assert recommend(69) == "review"
    assert recommend(40) == "review"
    assert recommend(39) == "reject"

    strict = RecommendationThresholds(approve_at=90, review_at=80)
    assert recommend(85, strict) == "review"
    assert recommend(79, strict) == "reject"


def test_ensure_batch_rejects_empty_input() -> None:
    with pytest.raises(ValidationError):
        ensure_batch([])
