import asyncio
import json
from datetime import datetime, timezone

from rawwire.core.config import DEFAULT_WEIGHTS
from rawwire.schemas.items import WorkItem
from rawwire.services.adapters import GenerationResult
from rawwire.services.keyword_scorer import KeywordScorer
from rawwire.services.lifecycle import LifecycleService
from rawwire.services.rescoring import process_retry_queue
from rawwire.services.retry_queue import RetryQueue
from rawwire.services.scoring import CriterionWeights
from rawwire.services.semantic_scorer import SEMANTIC_STAGE, SemanticScorer
from rawwire.services.store import InMemoryItemStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
WEIGHTS = CriterionWeights.normalize(DEFAULT_WEIGHTS)


class ToggleAdapter:
    def __init__(self) -> None:
        self.available = False

    async def generate(self, prompt, options=None):
        raise AssertionError("semantic scoring uses chat")

    async def chat(self, system_prompt, user_prompt, options=None):
        if not self.available:
            return GenerationResult(success=False, error="HTTP 503")
        item_id = user_prompt.split("--- ITEM ", 1)[1].split(" ---", 1)[0]
        scores = {name: 90 for name in DEFAULT_WEIGHTS}
        return GenerationResult(
            success=True,
            content=json.dumps([{"id": item_id, "scores": scores, "final_score": 90, "reasoning": "strong"}]),
        )


def _setup():
    store = InMemoryItemStore()
    queue = RetryQueue(store, max_attempts=2, base_seconds=0, clock=lambda: NOW)
    adapter = ToggleAdapter()
    keyword = KeywordScorer(weights=WEIGHTS, clock=lambda: NOW)
    scorer = SemanticScorer(adapter, keyword, weights=WEIGHTS, retry_queue=queue, clock=lambda: NOW)
    lifecycle = LifecycleService(store, accept_threshold=60, clock=lambda: NOW)
    return store, queue, adapter, scorer, lifecycle


def test_recovered_adapter_rescores_queued_records() -> None:
    async def run() -> None:
        store, queue, adapter, scorer, lifecycle = _setup()
        ingest = await lifecycle.ingest([WorkItem(id="a", title="Short note", url="https://example.com/a")], actor="t")
        await lifecycle.score_candidates(scorer, actor="t")

        degraded = await lifecycle.get(ingest.accepted[0])
        assert degraded.score.fallback
        assert degraded.verdict == "rejected"
        assert len(await queue.list_pending(SEMANTIC_STAGE)) == 1

        adapter.available = True
        outcome = await process_retry_queue(queue, scorer, lifecycle)

        assert (outcome.processed, outcome.succeeded, outcome.failed) == (1, 1, 0)
        assert await queue.list_pending(SEMANTIC_STAGE) == []
        rescored = await lifecycle.get(ingest.accepted[0])
        assert rescored.score.scorer == "semantic"
        assert rescored.score.score == 90
        assert rescored.verdict == "accepted"
        events = await lifecycle.events(rescored.id)
        assert events[-1].event_type == "rescored"
        assert events[-1].actor == "system:rescoring"

        again = await process_retry_queue(queue, scorer, lifecycle)
        assert again.processed == 0

    asyncio.run(run())


def test_still_degraded_result_counts_as_failed_attempt() -> None:
    async def run() -> None:
        store, queue, adapter, scorer, lifecycle = _setup()
        await queue.enqueue(WorkItem(id="b", url="https://example.com/b"), "adapter_unavailable", SEMANTIC_STAGE)

        first = await process_retry_queue(queue, scorer, lifecycle)
        assert (first.processed, first.succeeded, first.failed) == (1, 0, 1)
        pending = await queue.list_pending(SEMANTIC_STAGE)
        assert pending[0].attempt_count == 1
        assert pending[0].last_error == "adapter_unavailable: HTTP 503"

        await process_retry_queue(queue, scorer, lifecycle)
        failed = await queue.list_failed(SEMANTIC_STAGE)
        assert [entry.item.id for entry in failed] == ["b"]
        # reprocessing never enqueues duplicates
        assert await queue.list_pending(SEMANTIC_STAGE) == []

    asyncio.run(run())


def test_disabled_primary_defers_rescoring_without_spending_attempts() -> None:
    async def run() -> None:
        store = InMemoryItemStore()
        queue = RetryQueue(store, max_attempts=2, base_seconds=0, clock=lambda: NOW)
        clock = {"now": 0.0}
        calls: list[str] = []

        class RevokedKeyAdapter(ToggleAdapter):
            async def chat(self, system_prompt, user_prompt, options=None):
                calls.append(user_prompt)
                return GenerationResult(success=False, error="HTTP 401", permanent=True)

        keyword = KeywordScorer(weights=WEIGHTS, clock=lambda: NOW)
        scorer = SemanticScorer(
            RevokedKeyAdapter(),
            keyword,
            weights=WEIGHTS,
            retry_queue=queue,
            disable_seconds=300,
            clock=lambda: NOW,
            monotonic=lambda: clock["now"],
        )
        for item_id in ("a", "b"):
            await queue.enqueue(WorkItem(id=item_id, url=f"https://example.com/{item_id}"), "adapter_unavailable", SEMANTIC_STAGE)

        first = await process_retry_queue(queue, scorer)
        assert (first.processed, first.succeeded, first.failed) == (1, 0, 1)

        for _ in range(3):
            deferred = await process_retry_queue(queue, scorer)
            assert (deferred.processed, deferred.succeeded, deferred.failed) == (0, 0, 0)

        assert len(calls) == 1
        assert await queue.list_failed(SEMANTIC_STAGE) == []
        pending = {entry.item.id: entry.attempt_count for entry in await queue.list_pending(SEMANTIC_STAGE)}
        assert pending == {"a": 1, "b": 0}

        clock["now"] = 301.0
        resumed = await process_retry_queue(queue, scorer)
        assert resumed.processed == 1
        assert len(calls) == 2

    asyncio.run(run())
