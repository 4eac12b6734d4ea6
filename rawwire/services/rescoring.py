from __future__ import annotations

import logging

from opentelemetry import trace

from rawwire.schemas.queue import QueueProcessOut
from rawwire.services.lifecycle import LifecycleService
from rawwire.services.retry_queue import RetryQueue
from rawwire.services.semantic_scorer import PRIMARY_DISABLED, SEMANTIC_STAGE, SemanticScorer

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RESCORING_ACTOR = "system:rescoring"


async def process_retry_queue(
    queue: RetryQueue,
    scorer: SemanticScorer,
    lifecycle: LifecycleService | None = None,
    *,
    limit: int = 20,
    actor: str = RESCORING_ACTOR,
) -> QueueProcessOut:
    """Re-run primary scoring for due queue entries.

    A result that is still degraded counts as a failed attempt; the queue decides
    whether the entry is retried later or retained as terminally failed. While the
    primary path is disabled nothing is attempted, so entries keep their attempts.
    """
    if scorer.primary_disabled:
        logger.info("primary scoring disabled; retry queue pass deferred stage=%s", SEMANTIC_STAGE)
        return QueueProcessOut(processed=0, succeeded=0, failed=0)

    entries = await queue.dequeue_batch(SEMANTIC_STAGE, limit=limit)
    processed = 0
    succeeded = 0
    failed = 0
    with tracer.start_as_current_span("rescoring.process_batch") as span:
        span.set_attribute("rescoring.batch_size", len(entries))
        for entry in entries:
            result = await scorer.score_item(entry.item, enqueue_failures=False)
            if result.fallback_reason == PRIMARY_DISABLED:
                logger.info("primary scoring disabled mid-batch; deferring remaining entries from entry_id=%s", entry.id)
                break
            processed += 1
            if result.fallback:
                await queue.mark_attempt(entry.id, success=False, error=result.fallback_reason)
                failed += 1
                continue

            if lifecycle is not None:
                await lifecycle.record_rescore(entry.item, result, actor=actor)
            await queue.mark_attempt(entry.id, success=True)
            succeeded += 1

    if processed:
        logger.info("processed retry queue stage=%s processed=%s succeeded=%s", SEMANTIC_STAGE, processed, succeeded)
    return QueueProcessOut(processed=processed, succeeded=succeeded, failed=failed)
