from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter

from rawwire.core.auth import CapabilityCheck, deny_all, require_capability
from rawwire.core.config import Settings, get_settings
from rawwire.pipeline.context import lookup
from rawwire.pipeline.engine import PipelineEngine
from rawwire.pipeline.scheduler import PipelineRegistry, PipelineScheduler
from rawwire.pipeline.steps import StepCallback
from rawwire.schemas.items import WorkItemIn
from rawwire.schemas.pipelines import CallbackStep, PipelineDefinition, PipelineStep
from rawwire.schemas.queue import QueueProcessOut
from rawwire.services.adapters import GenerationAdapter, HttpGenerationAdapter
from rawwire.services.keyword_scorer import KeywordScorer
from rawwire.services.lifecycle import INGEST_CAPABILITY, SCORE_CAPABILITY, LifecycleService
from rawwire.services.rescoring import process_retry_queue
from rawwire.services.retry_queue import RetryQueue
from rawwire.services.scoring import CriterionWeights
from rawwire.services.semantic_scorer import SemanticScorer, build_scorer
from rawwire.services.store import InMemoryItemStore, ItemStore

logger = logging.getLogger(__name__)

PIPELINE_ACTOR = "system:pipeline"
DEFAULT_PIPELINE = PipelineDefinition(
    name="ingest_and_score",
    steps=[
        CallbackStep(name="ingest", callback="ingest_items"),
        CallbackStep(name="score", callback="score_candidates"),
    ],
)

_DEFINITIONS_ADAPTER = TypeAdapter(list[PipelineDefinition])


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: ItemStore
    retry_queue: RetryQueue
    lifecycle: LifecycleService
    scheduler: PipelineScheduler
    registry: PipelineRegistry
    weights: CriterionWeights
    scorer: KeywordScorer | SemanticScorer
    generation_adapter: GenerationAdapter | None = None

    def update_weights(self, raw: dict[str, float]) -> CriterionWeights:
        """Replace the criterion weights; the scorer is rebuilt around the new weights."""
        weights = CriterionWeights.normalize(raw)
        self.weights = weights
        self.scorer = build_scorer(
            self.settings,
            adapter=self.generation_adapter,
            retry_queue=self.retry_queue,
            weights=weights,
        )
        logger.info("criterion weights updated weights=%s", weights.weights)
        return weights

    def engine(
        self,
        name: str,
        steps: list[PipelineStep],
        *,
        check: CapabilityCheck | None = None,
    ) -> PipelineEngine:
        """Build an engine whose lifecycle callbacks act under ``check``; without one they are denied."""
        return PipelineEngine(
            steps,
            name=name,
            settings=self.settings,
            callbacks=build_callbacks(self, check),
            store=self.store,
            scheduler=self.scheduler,
        )

    def engine_for(self, name: str, *, check: CapabilityCheck | None = None) -> PipelineEngine:
        definition = self.registry.get(name)
        return self.engine(definition.name, definition.steps, check=check)

    async def process_retry_queue(self) -> QueueProcessOut:
        if not isinstance(self.scorer, SemanticScorer):
            return QueueProcessOut(processed=0, succeeded=0, failed=0)
        return await process_retry_queue(
            self.retry_queue,
            self.scorer,
            self.lifecycle,
            limit=self.settings.retry_queue_batch_size,
        )


def load_pipeline_definitions(raw: str | None) -> list[PipelineDefinition]:
    if not raw:
        return []
    return _DEFINITIONS_ADAPTER.validate_python(json.loads(raw))


def build_callbacks(runtime: Runtime, check: CapabilityCheck | None) -> dict[str, StepCallback]:
    """Expose the lifecycle and scoring operations as pipeline callbacks.

    Each callback runs under ``check``, the capability check of whoever triggered
    the pipeline.
    """
    guard = check if check is not None else deny_all

    async def ingest_items(context: dict[str, Any]) -> dict[str, Any]:
        require_capability(guard, INGEST_CAPABILITY)
        raw_items = lookup(context, "data.items", [])
        items = [WorkItemIn.model_validate(row).to_work_item() for row in raw_items]
        if not items:
            return {"accepted": [], "duplicates": []}
        result = await runtime.lifecycle.ingest(
            items,
            actor=PIPELINE_ACTOR,
            resubmit=bool(lookup(context, "data.resubmit", False)),
            check=guard,
        )
        return result.model_dump()

    async def score_candidates(context: dict[str, Any]) -> dict[str, Any]:
        limit = int(lookup(context, "data.limit", 50))
        archived = await runtime.lifecycle.score_candidates(
            runtime.scorer,
            actor=PIPELINE_ACTOR,
            limit=limit,
            check=guard,
        )
        return {
            "scored": len(archived),
            "accepted": sum(1 for record in archived if record.verdict == "accepted"),
            "rejected": sum(1 for record in archived if record.verdict == "rejected"),
            "record_ids": [record.id for record in archived],
        }

    async def reprocess_retry_queue(context: dict[str, Any]) -> dict[str, Any]:
        require_capability(guard, SCORE_CAPABILITY)
        return (await runtime.process_retry_queue()).model_dump()

    async def auto_approve(context: dict[str, Any]) -> dict[str, Any]:
        per_source = lookup(context, "data.per_source")
        approved = await runtime.lifecycle.auto_approve_top(
            actor=PIPELINE_ACTOR,
            per_source=int(per_source) if per_source else None,
            check=guard,
        )
        return {"approved": [record.id for record in approved]}

    return {
        "ingest_items": ingest_items,
        "score_candidates": score_candidates,
        "process_retry_queue": reprocess_retry_queue,
        "auto_approve": auto_approve,
    }


def build_runtime(settings: Settings, *, store: ItemStore | None = None) -> Runtime:
    store = store or InMemoryItemStore()
    retry_queue = RetryQueue.from_settings(store, settings)
    adapter: GenerationAdapter | None = None
    if settings.generation_endpoint:
        adapter = HttpGenerationAdapter(
            settings.generation_endpoint,
            api_key=settings.generation_api_key,
            model=settings.generation_model,
            timeout_seconds=settings.semantic_timeout_seconds,
        )
    weights = CriterionWeights.normalize(settings.scoring_weights)
    registry = PipelineRegistry([DEFAULT_PIPELINE, *load_pipeline_definitions(settings.pipeline_definitions_json)])

    return Runtime(
        settings=settings,
        store=store,
        retry_queue=retry_queue,
        lifecycle=LifecycleService.from_settings(store, settings),
        scheduler=PipelineScheduler(store, concurrency=settings.pipeline_worker_concurrency),
        registry=registry,
        weights=weights,
        scorer=build_scorer(settings, adapter=adapter, retry_queue=retry_queue, weights=weights),
        generation_adapter=adapter,
    )


@lru_cache
def get_runtime() -> Runtime:
    return build_runtime(get_settings())
