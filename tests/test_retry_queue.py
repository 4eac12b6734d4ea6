import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from rawwire.core.errors import NotFoundError
from rawwire.schemas.items import WorkItem
from rawwire.services.retry_queue import RetryQueue, retry_delay_seconds
from rawwire.services.store import InMemoryItemStore

STAGE = "semantic_scoring"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _item(item_id: str) -> WorkItem:
    return WorkItem(id=item_id, title=item_id, url=f"https://example.com/{item_id}")


def test_retry_delay_doubles_and_caps() -> None:
    assert [retry_delay_seconds(attempt, base_seconds=30, max_seconds=600) for attempt in range(1, 7)] == [
        30,
        60,
        120,
        240,
        480,
        600,
    ]


def test_success_removes_entry() -> None:
    async def run() -> None:
        queue = RetryQueue(InMemoryItemStore(), clock=FakeClock())
        entry = await queue.enqueue(_item("a"), "adapter_unavailable", STAGE)

        due = await queue.dequeue_batch(STAGE)
        assert [row.id for row in due] == [entry.id]

        assert await queue.mark_attempt(entry.id, success=True) is None
        assert await queue.get(entry.id) is None
        assert await queue.dequeue_batch(STAGE) == []

    asyncio.run(run())


def test_failed_attempts_back_off_then_exhaust() -> None:
    async def run() -> None:
        clock = FakeClock()
        queue = RetryQueue(InMemoryItemStore(), max_attempts=3, base_seconds=30, max_seconds=600, clock=clock)
        entry = await queue.enqueue(_item("a"), "adapter_unavailable", STAGE)

        first = await queue.mark_attempt(entry.id, success=False, error="still down")
        assert first.attempt_count == 1
        assert first.last_error == "still down"
        assert first.next_attempt_at == clock.now + timedelta(seconds=30)
        assert await queue.dequeue_batch(STAGE) == []

        clock.advance(30)
        assert [row.id for row in await queue.dequeue_batch(STAGE)] == [entry.id]
        second = await queue.mark_attempt(entry.id, success=False, error="still down")
        assert second.next_attempt_at == clock.now + timedelta(seconds=60)

        clock.advance(60)
        third = await queue.mark_attempt(entry.id, success=False, error="gave up")
        assert third.status == "failed"
        assert third.attempt_count == 3

        clock.advance(86400)
        assert await queue.dequeue_batch(STAGE) == []
        assert [row.id for row in await queue.list_failed(STAGE)] == [entry.id]
        assert await queue.list_pending(STAGE) == []

        # terminal entries ignore further attempts
        again = await queue.mark_attempt(entry.id, success=True)
        assert again.status == "failed"
        assert again.attempt_count == 3

    asyncio.run(run())


def test_dequeue_is_oldest_first_limited_and_per_stage() -> None:
    async def run() -> None:
        clock = FakeClock()
        queue = RetryQueue(InMemoryItemStore(), clock=clock)
        first = await queue.enqueue(_item("a"), "err", STAGE)
        clock.advance(1)
        second = await queue.enqueue(_item("b"), "err", STAGE)
        clock.advance(1)
        await queue.enqueue(_item("c"), "err", "other_stage")
        await queue.enqueue(_item("d"), "err", STAGE)

        due = await queue.dequeue_batch(STAGE, limit=2)
        assert [row.id for row in due] == [first.id, second.id]
        # dequeue does not remove entries
        assert len(await queue.dequeue_batch(STAGE)) == 3

    asyncio.run(run())


def test_mark_attempt_unknown_entry_raises() -> None:
    queue = RetryQueue(InMemoryItemStore())
    with pytest.raises(NotFoundError):
        asyncio.run(queue.mark_attempt("missing", success=True))
