import asyncio
import json
import re
from datetime import datetime, timezone

import pytest

from rawwire.core.config import DEFAULT_WEIGHTS, Settings
from rawwire.core.errors import MalformedResponse
from rawwire.schemas.items import WorkItem
from rawwire.services.adapters import GenerationResult
from rawwire.services.keyword_scorer import KeywordScorer
from rawwire.services.retry_queue import RetryQueue
from rawwire.services.scoring import CriterionWeights
from rawwire.services.semantic_scorer import (
    FALLBACK_SCORER_NAME,
    SEMANTIC_STAGE,
    SemanticScorer,
    build_scorer,
    extract_json_payload,
)
from rawwire.services.store import InMemoryItemStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
WEIGHTS = CriterionWeights.normalize(DEFAULT_WEIGHTS)
SCORES = {"relevance": 80, "quality": 60, "timeliness": 40, "uniqueness": 50, "engagement": 70}
_ITEM_RE = re.compile(r"--- ITEM (\S+) ---")


class FakeGenerationAdapter:
    def __init__(self, responder) -> None:
        self.responder = responder
        self.calls: list[list[str]] = []

    async def generate(self, prompt, options=None):
        raise AssertionError("semantic scoring uses chat")

    async def chat(self, system_prompt, user_prompt, options=None):
        ids = _ITEM_RE.findall(user_prompt)
        self.calls.append(ids)
        outcome = self.responder(ids)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        return outcome


def _reply(ids, *, skip=()) -> GenerationResult:
    rows = [
        {"id": item_id, "scores": SCORES, "final_score": 99, "reasoning": f"scored {item_id}"}
        for item_id in ids
        if item_id not in skip
    ]
    return GenerationResult(success=True, content=json.dumps({"items": rows}))


def _items(count: int) -> list[WorkItem]:
    return [
        WorkItem(id=f"item-{index}", title=f"Story {index}", url=f"https://example.com/{index}")
        for index in range(count)
    ]


def _keyword() -> KeywordScorer:
    return KeywordScorer(primary_keywords=["story"], weights=WEIGHTS, clock=lambda: NOW)


def _semantic(adapter, **kwargs) -> SemanticScorer:
    kwargs.setdefault("weights", WEIGHTS)
    return SemanticScorer(adapter, _keyword(), clock=lambda: NOW, **kwargs)


def _queue(store: InMemoryItemStore) -> RetryQueue:
    return RetryQueue(store, clock=lambda: NOW)


def test_adapter_scores_are_clamped_and_reaggregated() -> None:
    adapter = FakeGenerationAdapter(_reply)
    scorer = _semantic(adapter)

    result = asyncio.run(scorer.score_item(_items(1)[0]))

    assert result.scorer == "semantic"
    assert result.fallback is False
    # the reported final_score of 99 is ignored in favour of the weighted mean
    assert result.score == 62
    assert result.recommendation == "review"
    assert result.criteria == SCORES
    assert result.rationale == "scored item-0"


def test_batches_are_chunked_and_matched_by_id() -> None:
    adapter = FakeGenerationAdapter(lambda ids: _reply(list(reversed(ids))))
    scorer = _semantic(adapter, chunk_size=5)
    items = _items(7)

    results = asyncio.run(scorer.score_batch(items))

    assert [len(call) for call in adapter.calls] == [5, 2]
    assert [result.item_id for result in results] == [item.id for item in items]
    assert all(not result.fallback for result in results)


def test_adapter_failure_returns_exact_fallback_results() -> None:
    adapter = FakeGenerationAdapter(lambda ids: GenerationResult(success=False, error="HTTP 500"))
    scorer = _semantic(adapter)
    items = _items(3)

    degraded = asyncio.run(scorer.score_batch(items))
    direct = asyncio.run(_keyword().score_batch(items))

    excluded = {"scorer", "fallback", "fallback_reason"}
    assert [result.model_dump(exclude=excluded) for result in degraded] == [
        result.model_dump(exclude=excluded) for result in direct
    ]
    assert all(result.fallback for result in degraded)
    assert all(result.scorer == FALLBACK_SCORER_NAME for result in degraded)
    assert degraded[0].fallback_reason == "adapter_unavailable: HTTP 500"


def test_recoverable_failures_are_enqueued_for_rescoring() -> None:
    store = InMemoryItemStore()
    adapter = FakeGenerationAdapter(lambda ids: GenerationResult(success=False, error="HTTP 503"))
    scorer = _semantic(adapter, retry_queue=_queue(store))

    asyncio.run(scorer.score_batch(_items(2)))

    entries = asyncio.run(store.list_queue_entries(stage=SEMANTIC_STAGE))
    assert sorted(entry.item.id for entry in entries) == ["item-0", "item-1"]
    assert all(entry.error == "adapter_unavailable: HTTP 503" for entry in entries)


def test_enqueueing_can_be_suppressed() -> None:
    store = InMemoryItemStore()
    adapter = FakeGenerationAdapter(lambda ids: GenerationResult(success=False, error="HTTP 503"))
    scorer = _semantic(adapter, retry_queue=_queue(store))

    asyncio.run(scorer.score_batch(_items(2), enqueue_failures=False))

    assert asyncio.run(store.list_queue_entries(stage=SEMANTIC_STAGE)) == []


def test_item_missing_from_reply_falls_back_individually() -> None:
    store = InMemoryItemStore()
    adapter = FakeGenerationAdapter(lambda ids: _reply(ids, skip={"item-1"}))
    scorer = _semantic(adapter, retry_queue=_queue(store))

    results = asyncio.run(scorer.score_batch(_items(3)))

    assert [result.fallback for result in results] == [False, True, False]
    assert results[1].fallback_reason == "missing_from_response"
    entries = asyncio.run(store.list_queue_entries(stage=SEMANTIC_STAGE))
    assert [entry.item.id for entry in entries] == ["item-1"]


def test_malformed_reply_falls_back() -> None:
    adapter = FakeGenerationAdapter(lambda ids: GenerationResult(success=True, content="I cannot score these."))
    scorer = _semantic(adapter)

    results = asyncio.run(scorer.score_batch(_items(2)))

    assert all(result.fallback for result in results)
    assert results[0].fallback_reason.startswith("malformed_response:")


def test_entry_without_scores_falls_back() -> None:
    def responder(ids):
        rows = [{"id": item_id, "final_score": 70} for item_id in ids]
        return GenerationResult(success=True, content=json.dumps(rows))

    results = asyncio.run(_semantic(FakeGenerationAdapter(responder)).score_batch(_items(1)))

    assert results[0].fallback
    assert results[0].fallback_reason == "malformed_response: missing scores"


@pytest.mark.parametrize("raw_value", ["1e999", "-Infinity", "NaN", "1" + "0" * 400])
def test_non_finite_criterion_falls_back(raw_value: str) -> None:
    content = '{"items": [{"id": "item-0", "scores": {"relevance": %s}, "final_score": 50}]}' % raw_value
    adapter = FakeGenerationAdapter(lambda ids: GenerationResult(success=True, content=content))

    results = asyncio.run(_semantic(adapter).score_batch(_items(1)))

    assert results[0].fallback
    assert results[0].fallback_reason.startswith("malformed_response: criterion 'relevance'")
    assert 0 <= results[0].score <= 100


def test_adapter_timeout_falls_back() -> None:
    async def slow(ids):
        await asyncio.sleep(1)
        return _reply(ids)

    store = InMemoryItemStore()
    scorer = _semantic(FakeGenerationAdapter(slow), timeout_seconds=0.01, retry_queue=_queue(store))

    result = asyncio.run(scorer.score_item(_items(1)[0]))

    assert result.fallback
    assert "timed out" in result.fallback_reason
    assert len(asyncio.run(store.list_queue_entries(stage=SEMANTIC_STAGE))) == 1


def test_adapter_exception_is_treated_as_unavailable() -> None:
    def explode(ids):
        raise RuntimeError("socket closed")

    result = asyncio.run(_semantic(FakeGenerationAdapter(explode)).score_item(_items(1)[0]))

    assert result.fallback
    assert result.fallback_reason == "adapter_unavailable: generation adapter raised RuntimeError: socket closed"


def test_permanent_failure_disables_primary_without_enqueueing() -> None:
    store = InMemoryItemStore()
    clock = {"now": 100.0}
    adapter = FakeGenerationAdapter(
        lambda ids: GenerationResult(success=False, error="HTTP 401", permanent=True)
    )
    scorer = _semantic(
        adapter,
        retry_queue=_queue(store),
        disable_seconds=300,
        monotonic=lambda: clock["now"],
    )

    first = asyncio.run(scorer.score_batch(_items(2)))
    second = asyncio.run(scorer.score_batch(_items(2)))

    assert len(adapter.calls) == 1
    assert scorer.primary_disabled
    assert first[0].fallback_reason.startswith("adapter_unavailable_permanent:")
    assert second[0].fallback_reason == "primary_disabled"
    assert asyncio.run(store.list_queue_entries(stage=SEMANTIC_STAGE)) == []

    clock["now"] = 401.0
    adapter.responder = _reply
    recovered = asyncio.run(scorer.score_batch(_items(1)))
    assert not scorer.primary_disabled
    assert recovered[0].fallback is False


def test_extract_json_payload_handles_fences_and_trailing_commas() -> None:
    text = 'Here you go:\n```json\n{"items": [{"id": "a", "scores": {"relevance": 5,},},]}\n```'
    assert extract_json_payload(text) == {"items": [{"id": "a", "scores": {"relevance": 5}}]}
    assert extract_json_payload('[{"id": "b"}]') == [{"id": "b"}]


@pytest.mark.parametrize("text", ["", "   ", "no json here", '{"items": [1, 2'])
def test_extract_json_payload_rejects_unusable_text(text: str) -> None:
    with pytest.raises(MalformedResponse):
        extract_json_payload(text)


def test_build_scorer_picks_keyword_without_adapter() -> None:
    settings = Settings(keywords_primary=["story"])
    assert build_scorer(settings).name == "keyword"

    adapter = FakeGenerationAdapter(_reply)
    semantic = build_scorer(settings, adapter=adapter)
    assert isinstance(semantic, SemanticScorer)
    assert semantic.fallback.name == "keyword"
