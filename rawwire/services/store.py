from __future__ import annotations

from typing import Protocol

from rawwire.schemas.candidates import ContentRecord, LifecycleEvent, LifecycleRecord
from rawwire.schemas.pipelines import PipelineExecution
from rawwire.schemas.queue import QueueEntry


class ItemStore(Protocol):
    """Persistence contract for lifecycle records, queue entries and executions."""

    async def insert_record(self, record: LifecycleRecord) -> LifecycleRecord: ...

    async def get_record(self, record_id: str) -> LifecycleRecord | None: ...

    async def find_records_by_url(self, canonical_url: str) -> list[LifecycleRecord]: ...

    async def update_record(self, record: LifecycleRecord) -> LifecycleRecord: ...

    async def list_records(
        self,
        *,
        state: str | None = None,
        verdict: str | None = None,
        source: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LifecycleRecord]: ...

    async def add_event(self, event: LifecycleEvent) -> LifecycleEvent: ...

    async def list_events(self, record_id: str, *, limit: int = 100, offset: int = 0) -> list[LifecycleEvent]: ...

    async def get_content(self, content_id: str) -> ContentRecord | None: ...

    async def insert_content(self, content: ContentRecord) -> ContentRecord: ...

    async def insert_queue_entry(self, entry: QueueEntry) -> QueueEntry: ...

    async def get_queue_entry(self, entry_id: str) -> QueueEntry | None: ...

    async def update_queue_entry(self, entry: QueueEntry) -> QueueEntry: ...

    async def delete_queue_entry(self, entry_id: str) -> None: ...

    async def list_queue_entries(self, *, stage: str, status: str | None = None) -> list[QueueEntry]: ...

    async def save_execution(self, execution: PipelineExecution) -> PipelineExecution: ...

    async def get_execution(self, execution_id: str) -> PipelineExecution | None: ...


class InMemoryItemStore:
    """Process-local store; values are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self.records: dict[str, LifecycleRecord] = {}
        self.events: list[LifecycleEvent] = []
        self.content: dict[str, ContentRecord] = {}
        self.queue: dict[str, QueueEntry] = {}
        self.executions: dict[str, PipelineExecution] = {}

    async def insert_record(self, record: LifecycleRecord) -> LifecycleRecord:
        self.records[record.id] = record.model_copy(deep=True)
        return record

    async def get_record(self, record_id: str) -> LifecycleRecord | None:
        record = self.records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def find_records_by_url(self, canonical_url: str) -> list[LifecycleRecord]:
        return [
            record.model_copy(deep=True)
            for record in self.records.values()
            if record.canonical_url == canonical_url
        ]

    async def update_record(self, record: LifecycleRecord) -> LifecycleRecord:
        self.records[record.id] = record.model_copy(deep=True)
        return record

    async def list_records(
        self,
        *,
        state: str | None = None,
        verdict: str | None = None,
        source: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LifecycleRecord]:
        rows = [
            record
            for record in sorted(self.records.values(), key=lambda row: row.created_at)
            if (state is None or record.state == state)
            and (verdict is None or record.verdict == verdict)
            and (source is None or record.source == source)
        ]
        return [record.model_copy(deep=True) for record in rows[offset : offset + limit]]

    async def add_event(self, event: LifecycleEvent) -> LifecycleEvent:
        stored = event.model_copy(update={"id": len(self.events) + 1})
        self.events.append(stored)
        return stored

    async def list_events(self, record_id: str, *, limit: int = 100, offset: int = 0) -> list[LifecycleEvent]:
        rows = [event for event in self.events if event.record_id == record_id]
        return rows[offset : offset + limit]

    async def get_content(self, content_id: str) -> ContentRecord | None:
        return self.content.get(content_id)

    async def insert_content(self, content: ContentRecord) -> ContentRecord:
        self.content.setdefault(content.content_id, content)
        return self.content[content.content_id]

    async def insert_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        self.queue[entry.id] = entry.model_copy(deep=True)
        return entry

    async def get_queue_entry(self, entry_id: str) -> QueueEntry | None:
        entry = self.queue.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def update_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        self.queue[entry.id] = entry.model_copy(deep=True)
        return entry

    async def delete_queue_entry(self, entry_id: str) -> None:
        self.queue.pop(entry_id, None)

    async def list_queue_entries(self, *, stage: str, status: str | None = None) -> list[QueueEntry]:
        rows = [
            entry
            for entry in self.queue.values()
            if entry.stage == stage and (status is None or entry.status == status)
        ]
        rows.sort(key=lambda row: row.enqueued_at)
        return [entry.model_copy(deep=True) for entry in rows]

    async def save_execution(self, execution: PipelineExecution) -> PipelineExecution:
        self.executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get_execution(self, execution_id: str) -> PipelineExecution | None:
        execution = self.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None
