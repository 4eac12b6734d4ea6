from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from rawwire.core.config import Settings
from rawwire.core.errors import ValidationError
from rawwire.schemas.items import Recommendation, ScoreResult, WorkItem

NEUTRAL_CRITERION_SCORE = 50


class Scorer(Protocol):
    name: str

    async def score_item(self, item: WorkItem) -> ScoreResult: ...

    async def score_batch(self, items: Sequence[WorkItem]) -> list[ScoreResult]: ...


@dataclass(slots=True, frozen=True)
class CriterionWeights:
    """Criterion weights normalized to sum to 100."""

    weights: dict[str, float]

    @classmethod
    def normalize(cls, raw: Mapping[str, float]) -> CriterionWeights:
        if not raw:
            raise ValidationError("criterion weights must not be empty")
        for criterion, weight in raw.items():
            if not isinstance(weight, (int, float)) or isinstance(weight, bool):
                raise ValidationError(f"weight for {criterion!r} must be a number")
            if weight < 0 or weight > 100:
                raise ValidationError(f"weight for {criterion!r} must be within [0, 100], got {weight}")
        total = float(sum(raw.values()))
        if total <= 0:
            raise ValidationError("criterion weights must have a positive total")
        return cls(weights={criterion: float(weight) * 100.0 / total for criterion, weight in raw.items()})

    def fractions(self) -> dict[str, float]:
        total = sum(self.weights.values())
        return {criterion: weight / total for criterion, weight in self.weights.items()}

    def restrict(self, criteria: Iterable[str]) -> CriterionWeights:
        names = list(criteria)
        subset = {name: self.weights.get(name, 0.0) for name in names}
        if sum(subset.values()) <= 0:
            subset = {name: 1.0 for name in names}
        return CriterionWeights.normalize(subset)


@dataclass(slots=True, frozen=True)
class RecommendationThresholds:
    approve_at: int = 70
    review_at: int = 40

    @classmethod
    def from_settings(cls, settings: Settings) -> RecommendationThresholds:
        return cls(approve_at=settings.recommend_approve_at, review_at=settings.recommend_review_at)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def aggregate_score(
    criteria_scores: Mapping[str, float],
    weights: CriterionWeights | Mapping[str, float],
) -> int:
    """Weighted mean over the weighted criteria, rounded half-up and clamped to 0..100.

    A weighted criterion absent from ``criteria_scores`` contributes
    ``NEUTRAL_CRITERION_SCORE``.
    """
    weight_map = weights.weights if isinstance(weights, CriterionWeights) else dict(weights)
    total_weight = sum(weight_map.values())
    if total_weight <= 0:
        raise ValidationError("criterion weights must have a positive total")

    weighted = 0.0
    for criterion, weight in weight_map.items():
        value = float(criteria_scores.get(criterion, NEUTRAL_CRITERION_SCORE))
        if not math.isfinite(value):
            raise ValidationError(f"criterion {criterion!r} score must be finite")
        weighted += max(0.0, min(100.0, value)) * weight
    return clamp_score(weighted / total_weight)


def recommend(score: int, thresholds: RecommendationThresholds | None = None) -> Recommendation:
    limits = thresholds or RecommendationThresholds()
    if score >= limits.approve_at:
        return "approve"
    if score >= limits.review_at:
        return "review"
    return "reject"


def ensure_batch(items: Sequence[WorkItem]) -> list[WorkItem]:
    if not items:
        raise ValidationError("cannot score an empty item set")
    return list(items)
