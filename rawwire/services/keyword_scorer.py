from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from rawwire.core.config import Settings
from rawwire.schemas.items import ScoreResult, WorkItem
from rawwire.services.scoring import (
    CriterionWeights,
    RecommendationThresholds,
    aggregate_score,
    ensure_batch,
    recommend,
    round_half_up,
)

KEYWORD_CRITERIA = ("relevance", "timeliness", "quality")
PRIMARY_SHARE = 0.7
SECONDARY_SHARE = 0.3
NO_KEYWORDS_RELEVANCE = 50
UNDATED_TIMELINESS = 70

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z'-]*")
_FRESHNESS_STEPS = ((1, 100), (7, 90), (30, 75), (90, 50), (180, 30))
_TEXT_METADATA_KEYS = ("description", "summary", "content")


@dataclass(slots=True)
class KeywordMatch:
    score: int
    matched_primary: list[str]
    matched_secondary: list[str]
    total: int

    @property
    def matched(self) -> int:
        return len(self.matched_primary) + len(self.matched_secondary)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_keywords(keywords: Sequence[str]) -> list[str]:
    seen: list[str] = []
    for keyword in keywords:
        cleaned = keyword.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def keyword_exists(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text, re.IGNORECASE) is not None


def analyzable_text(item: WorkItem) -> str:
    parts = [item.title, item.body]
    for key in _TEXT_METADATA_KEYS:
        value = item.metadata.get(key)
        if isinstance(value, str):
            parts.append(value)
    return " ".join(part for part in parts if part).lower()


def score_relevance(text: str, primary: Sequence[str], secondary: Sequence[str]) -> KeywordMatch:
    matched_primary = [keyword for keyword in primary if keyword_exists(text, keyword)]
    matched_secondary = [keyword for keyword in secondary if keyword_exists(text, keyword)]
    total = len(primary) + len(secondary)
    if total == 0:
        return KeywordMatch(NO_KEYWORDS_RELEVANCE, [], [], 0)

    if not secondary:
        primary_share, secondary_share = 1.0, 0.0
    elif not primary:
        primary_share, secondary_share = 0.0, 1.0
    else:
        primary_share, secondary_share = PRIMARY_SHARE, SECONDARY_SHARE

    value = 0.0
    if primary:
        value += len(matched_primary) / len(primary) * 100 * primary_share
    if secondary:
        value += len(matched_secondary) / len(secondary) * 100 * secondary_share
    return KeywordMatch(round_half_up(value), matched_primary, matched_secondary, total)


def score_timeliness(created_at: datetime | None, now: datetime) -> int:
    if created_at is None:
        return UNDATED_TIMELINESS
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_days = (now - created_at).total_seconds() / 86400
    for max_days, value in _FRESHNESS_STEPS:
        if age_days <= max_days:
            return value
    return 10


def score_quality(text: str) -> int:
    word_count = len(_WORD_RE.findall(text))
    if word_count < 20:
        return 20
    if word_count < 50:
        return 40
    if word_count < 100:
        return 60
    if word_count <= 500:
        return 100
    if word_count <= 1000:
        return 80
    return 60


class KeywordScorer:
    """Deterministic scorer over keyword relevance, freshness and length.

    Performs no I/O; identical items, keywords, weights and clock readings always
    produce identical results.
    """

    name = "keyword"

    def __init__(
        self,
        *,
        primary_keywords: Sequence[str] = (),
        secondary_keywords: Sequence[str] = (),
        weights: CriterionWeights | None = None,
        thresholds: RecommendationThresholds | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.primary_keywords = _clean_keywords(primary_keywords)
        self.secondary_keywords = _clean_keywords(secondary_keywords)
        base_weights = weights or CriterionWeights.normalize({criterion: 1.0 for criterion in KEYWORD_CRITERIA})
        self.weights = base_weights.restrict(KEYWORD_CRITERIA)
        self.thresholds = thresholds or RecommendationThresholds()
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        weights: CriterionWeights | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> KeywordScorer:
        return cls(
            primary_keywords=settings.keywords_primary,
            secondary_keywords=settings.keywords_secondary,
            weights=weights or CriterionWeights.normalize(settings.scoring_weights),
            thresholds=RecommendationThresholds.from_settings(settings),
            clock=clock,
        )

    def evaluate(self, item: WorkItem) -> ScoreResult:
        text = analyzable_text(item)
        keywords = score_relevance(text, self.primary_keywords, self.secondary_keywords)
        now = self.clock()
        criteria = {
            "relevance": keywords.score,
            "timeliness": score_timeliness(item.created_at, now),
            "quality": score_quality(text),
        }
        score = aggregate_score(criteria, self.weights)
        return ScoreResult(
            item_id=item.id,
            score=score,
            criteria=criteria,
            rationale=_rationale(keywords, criteria),
            scorer=self.name,
            recommendation=recommend(score, self.thresholds),
            scored_at=now,
        )

    async def score_item(self, item: WorkItem) -> ScoreResult:
        return self.evaluate(item)

    async def score_batch(self, items: Sequence[WorkItem]) -> list[ScoreResult]:
        return [self.evaluate(item) for item in ensure_batch(items)]


def _rationale(keywords: KeywordMatch, criteria: dict[str, int]) -> str:
    if keywords.total == 0:
        details = "No campaign keywords configured."
    else:
        chunks = []
        if keywords.matched_primary:
            chunks.append("Primary: " + ", ".join(keywords.matched_primary) + ".")
        if keywords.matched_secondary:
            chunks.append("Secondary: " + ", ".join(keywords.matched_secondary) + ".")
        details = " ".join(chunks) or "No keyword matches found."
    return (
        f"Keyword matches: {keywords.matched}/{keywords.total} ({criteria['relevance']}%). "
        f"Freshness: {criteria['timeliness']}%. Content quality: {criteria['quality']}%. {details}"
    )
