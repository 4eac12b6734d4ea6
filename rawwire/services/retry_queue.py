from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from rawwire.core.config import Settings
from rawwire.core.errors import NotFoundError
from rawwire.schemas.items import WorkItem
from rawwire.schemas.queue import QueueEntry
from rawwire.services.store import ItemStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_seconds(attempt: int, *, base_seconds: int, max_seconds: int) -> int:
    return min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)


class RetryQueue:
    """Holding area for items whose scoring stage failed.

    Dequeue only reads; entries leave the queue through ``mark_attempt``.
    Writes are serialized per stage, so reprocessing is at-least-once.
    """

    def __init__(
        self,
        store: ItemStore,
        *,
        max_attempts: int = 3,
        base_seconds: int = 30,
        max_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(cls, store: ItemStore, settings: Settings) -> RetryQueue:
        return cls(
            store,
            max_attempts=settings.retry_queue_max_attempts,
            base_seconds=settings.retry_queue_base_seconds,
            max_seconds=settings.retry_queue_max_seconds,
        )

    async def enqueue(self, item: WorkItem, error: str, stage: str) -> QueueEntry:
        now = self.clock()
        entry = QueueEntry(item=item, stage=stage, error=error, enqueued_at=now, updated_at=now, next_attempt_at=now)
        async with self._locks[stage]:
            await self.store.insert_queue_entry(entry)
        logger.info("queued failed item entry_id=%s item_id=%s stage=%s", entry.id, item.id, stage)
        return entry

    async def dequeue_batch(self, stage: str, limit: int = 20) -> list[QueueEntry]:
        now = self.clock()
        entries = await self.store.list_queue_entries(stage=stage, status="pending")
        return [entry for entry in entries if entry.next_attempt_at <= now][:limit]

    async def mark_attempt(self, entry_id: str, success: bool, error: str | None = None) -> QueueEntry | None:
        """Record one processing attempt.

        Returns ``None`` when the entry was removed after a success, otherwise the
        updated entry (pending with a new ``next_attempt_at``, or terminally failed).
        """
        entry = await self.store.get_queue_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"queue entry not found: {entry_id}")

        async with self._locks[entry.stage]:
            entry = await self.store.get_queue_entry(entry_id)
            if entry is None:
                raise NotFoundError(f"queue entry not found: {entry_id}")
            if entry.status == "failed":
                return entry

            now = self.clock()
            attempt = entry.attempt_count + 1
            if success:
                await self.store.delete_queue_entry(entry_id)
                logger.info("queue entry resolved entry_id=%s attempts=%s", entry_id, attempt)
                return None

            updates: dict[str, object] = {
                "attempt_count": attempt,
                "last_error": error,
                "updated_at": now,
            }
            if attempt >= self.max_attempts:
                updates["status"] = "failed"
                logger.warning(
                    "queue entry exhausted entry_id=%s stage=%s attempts=%s error=%s",
                    entry_id,
                    entry.stage,
                    attempt,
                    error,
                )
            else:
                delay = retry_delay_seconds(attempt, base_seconds=self.base_seconds, max_seconds=self.max_seconds)
                updates["next_attempt_at"] = now + timedelta(seconds=delay)
            updated = entry.model_copy(update=updates)
            await self.store.update_queue_entry(updated)
            return updated

    async def list_pending(self, stage: str) -> list[QueueEntry]:
        return await self.store.list_queue_entries(stage=stage, status="pending")

    async def list_failed(self, stage: str) -> list[QueueEntry]:
        return await self.store.list_queue_entries(stage=stage, status="failed")

    async def get(self, entry_id: str) -> QueueEntry | None:
        return await self.store.get_queue_entry(entry_id)
