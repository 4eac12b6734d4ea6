from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from rawwire.core.config import Settings
from rawwire.core.errors import AdapterUnavailable, MalformedResponse
from rawwire.schemas.items import ScoreResult, WorkItem
from rawwire.services.adapters import GenerationAdapter
from rawwire.services.keyword_scorer import KeywordScorer
from rawwire.services.retry_queue import RetryQueue
from rawwire.services.scoring import (
    CriterionWeights,
    RecommendationThresholds,
    Scorer,
    aggregate_score,
    clamp_score,
    ensure_batch,
    recommend,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SEMANTIC_STAGE = "semantic_scoring"
FALLBACK_SCORER_NAME = "semantic_fallback"
PRIMARY_DISABLED = "primary_disabled"
CONTENT_PREVIEW_CHARS = 500

_CRITERIA_GUIDE = {
    "relevance": "alignment with the campaign keywords and niche",
    "quality": "writing quality, depth and professionalism",
    "timeliness": "how current the information is",
    "uniqueness": "fresh perspective or unique angle",
    "engagement": "appeal to the target audience",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SYSTEM_PROMPT = (
    "You are a content relevance scorer for an editorial pipeline. "
    "Rate every item on each criterion from 0 to 100 and answer with JSON only."
)


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped

    lines = stripped.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def extract_json_payload(text: str) -> Any:
    """Extract the first JSON object or array from free-form model output.

    Handles fenced code blocks, surrounding prose and trailing commas.
    """
    if not text or not text.strip():
        raise MalformedResponse("empty response; no JSON to parse")

    cleaned = _strip_code_fences(text)
    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index != -1]
    if not starts:
        raise MalformedResponse("no JSON found in response")
    start = min(starts)
    end = cleaned.rfind("}" if cleaned[start] == "{" else "]")
    if end <= start:
        raise MalformedResponse("unterminated JSON in response")

    candidate = re.sub(r",\s*([}\]])", r"\1", cleaned[start : end + 1])
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"JSON decode failed: {exc}") from exc


def build_user_prompt(items: Sequence[WorkItem], *, niche: str, audience: str, keywords: Sequence[str]) -> str:
    criteria = "\n".join(f"- {name}: {guide}" for name, guide in _CRITERIA_GUIDE.items())
    blocks = []
    for item in items:
        content = item.body[:CONTENT_PREVIEW_CHARS]
        blocks.append(f"--- ITEM {item.id} ---\nTitle: {item.title or 'Untitled'}\nSource: {item.source}\nContent: {content}")
    schema = {
        "items": [
            {
                "id": "<item id>",
                "scores": {name: "<0-100>" for name in _CRITERIA_GUIDE},
                "final_score": "<0-100>",
                "reasoning": "<one or two sentences>",
            }
        ]
    }
    return (
        f"CAMPAIGN CONTEXT:\nNiche: {niche}\nAudience: {audience}\n"
        f"Keywords: {', '.join(keywords) or 'none'}\n\n"
        f"SCORING CRITERIA (0-100 each):\n{criteria}\n\n"
        f"ITEMS TO SCORE:\n" + "\n".join(blocks) + "\n\n"
        f"Respond with JSON matching this shape:\n{json.dumps(schema, indent=2)}"
    )


def _entries_by_id(payload: Any) -> dict[str, dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        rows = payload["items"]
    elif isinstance(payload, dict) and "id" in payload:
        rows = [payload]
    elif isinstance(payload, list):
        rows = payload
    else:
        raise MalformedResponse("response must be a JSON array or an object with an items array")
    return {str(row["id"]): row for row in rows if isinstance(row, dict) and "id" in row}


class SemanticScorer:
    """Scores items through a generation adapter and degrades to a fallback scorer.

    Recoverable adapter failures are handed to the retry queue when one is wired in.
    A permanent failure disables the adapter path for ``disable_seconds``.
    """

    name = "semantic"

    def __init__(
        self,
        adapter: GenerationAdapter,
        fallback: Scorer,
        *,
        weights: CriterionWeights | None = None,
        thresholds: RecommendationThresholds | None = None,
        retry_queue: RetryQueue | None = None,
        chunk_size: int = 5,
        timeout_seconds: float = 60.0,
        disable_seconds: float = 300.0,
        niche: str = "",
        audience: str = "",
        keywords: Sequence[str] = (),
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.adapter = adapter
        self.fallback = fallback
        self.weights = weights or CriterionWeights.normalize({name: 1.0 for name in _CRITERIA_GUIDE})
        self.thresholds = thresholds or RecommendationThresholds()
        self.retry_queue = retry_queue
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.disable_seconds = disable_seconds
        self.niche = niche
        self.audience = audience
        self.keywords = list(keywords)
        self.clock = clock
        self.monotonic = monotonic
        self._disabled_until: float | None = None

    @property
    def primary_disabled(self) -> bool:
        return self._disabled_until is not None and self.monotonic() < self._disabled_until

    async def score_item(self, item: WorkItem, *, enqueue_failures: bool = True) -> ScoreResult:
        results = await self.score_batch([item], enqueue_failures=enqueue_failures)
        return results[0]

    async def score_batch(self, items: Sequence[WorkItem], *, enqueue_failures: bool = True) -> list[ScoreResult]:
        batch = ensure_batch(items)
        results: list[ScoreResult] = []
        for offset in range(0, len(batch), self.chunk_size):
            chunk = batch[offset : offset + self.chunk_size]
            with tracer.start_as_current_span("scoring.semantic_chunk") as span:
                span.set_attribute("scoring.chunk_size", len(chunk))
                results.extend(await self._score_chunk(chunk, enqueue_failures=enqueue_failures))
        return results

    async def _score_chunk(self, chunk: list[WorkItem], *, enqueue_failures: bool) -> list[ScoreResult]:
        if self.primary_disabled:
            return await self._fallback(chunk, PRIMARY_DISABLED, enqueue=False)

        try:
            entries = await self._request_scores(chunk)
        except AdapterUnavailable as exc:
            if exc.permanent:
                self._disabled_until = self.monotonic() + self.disable_seconds
                logger.error(
                    "generation adapter failed permanently; primary scoring disabled for %.0fs error=%s",
                    self.disable_seconds,
                    exc,
                )
                return await self._fallback(chunk, f"adapter_unavailable_permanent: {exc}", enqueue=False)
            return await self._fallback(chunk, f"adapter_unavailable: {exc}", enqueue=enqueue_failures)
        except MalformedResponse as exc:
            return await self._fallback(chunk, f"malformed_response: {exc}", enqueue=enqueue_failures)

        results: list[ScoreResult] = []
        for item in chunk:
            entry = entries.get(item.id)
            if entry is None:
                results.extend(await self._fallback([item], "missing_from_response", enqueue=enqueue_failures))
                continue
            try:
                results.append(self._to_result(item, entry))
            except MalformedResponse as exc:
                results.extend(await self._fallback([item], f"malformed_response: {exc}", enqueue=enqueue_failures))
        return results

    async def _request_scores(self, chunk: list[WorkItem]) -> dict[str, dict[str, Any]]:
        user_prompt = build_user_prompt(chunk, niche=self.niche, audience=self.audience, keywords=self.keywords)
        options = {"temperature": 0.3, "response_format": "json", "max_tokens": 400 * len(chunk)}
        try:
            response = await asyncio.wait_for(
                self.adapter.chat(SYSTEM_PROMPT, user_prompt, options),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise AdapterUnavailable(f"generation adapter timed out after {self.timeout_seconds}s") from exc
        except AdapterUnavailable:
            raise
        except Exception as exc:
            raise AdapterUnavailable(f"generation adapter raised {type(exc).__name__}: {exc}") from exc

        if not response.success:
            raise AdapterUnavailable(response.error or "generation adapter reported failure", permanent=response.permanent)
        return _entries_by_id(extract_json_payload(response.content or ""))

    def _to_result(self, item: WorkItem, entry: dict[str, Any]) -> ScoreResult:
        scores = entry.get("scores")
        if not isinstance(scores, dict):
            raise MalformedResponse("missing scores")
        if "final_score" not in entry:
            raise MalformedResponse("missing final_score")

        criteria: dict[str, int] = {}
        for criterion, value in scores.items():
            try:
                number = float(value)
            except (TypeError, ValueError, OverflowError) as exc:
                raise MalformedResponse(f"criterion {criterion!r} is not numeric") from exc
            if not math.isfinite(number):
                raise MalformedResponse(f"criterion {criterion!r} is not a finite number")
            criteria[str(criterion)] = clamp_score(number)

        score = aggregate_score(criteria, self.weights)
        reported = entry.get("final_score")
        if isinstance(reported, (int, float)) and abs(float(reported) - score) >= 1:
            logger.debug("recomputed semantic score item_id=%s reported=%s recomputed=%s", item.id, reported, score)

        return ScoreResult(
            item_id=item.id,
            score=score,
            criteria=criteria,
            rationale=str(entry.get("reasoning") or "Scored by generation adapter."),
            scorer=self.name,
            recommendation=recommend(score, self.thresholds),
            scored_at=self.clock(),
        )

    async def _fallback(self, items: list[WorkItem], reason: str, *, enqueue: bool) -> list[ScoreResult]:
        logger.warning("semantic scoring degraded to fallback items=%s reason=%s", len(items), reason)
        primary = await self.fallback.score_batch(items)
        tagged = [
            result.model_copy(update={"scorer": FALLBACK_SCORER_NAME, "fallback": True, "fallback_reason": reason})
            for result in primary
        ]
        if enqueue and self.retry_queue is not None:
            for item in items:
                await self.retry_queue.enqueue(item, reason, stage=SEMANTIC_STAGE)
        return tagged


def build_scorer(
    settings: Settings,
    *,
    adapter: GenerationAdapter | None = None,
    retry_queue: RetryQueue | None = None,
    weights: CriterionWeights | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> KeywordScorer | SemanticScorer:
    weights = weights or CriterionWeights.normalize(settings.scoring_weights)
    keyword = KeywordScorer.from_settings(settings, weights=weights, clock=clock)
    if adapter is None:
        return keyword
    return SemanticScorer(
        adapter,
        keyword,
        weights=weights,
        thresholds=RecommendationThresholds.from_settings(settings),
        retry_queue=retry_queue,
        chunk_size=settings.semantic_chunk_size,
        timeout_seconds=settings.semantic_timeout_seconds,
        disable_seconds=settings.semantic_disable_seconds,
        niche=settings.campaign_niche,
        audience=settings.campaign_audience,
        keywords=[*settings.keywords_primary, *settings.keywords_secondary],
        clock=clock,
    )
