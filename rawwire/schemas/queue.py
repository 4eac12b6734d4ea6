from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from rawwire.schemas.items import WorkItem

QueueEntryStatus = Literal["pending", "failed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    item: WorkItem
    stage: str
    error: str
    attempt_count: int = 0
    status: QueueEntryStatus = "pending"
    last_error: str | None = None
    enqueued_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    next_attempt_at: datetime = Field(default_factory=_utcnow)


class QueueEntryOut(BaseModel):
    id: str
    item_id: str
    title: str
    stage: str
    error: str
    last_error: str | None = None
    attempt_count: int
    status: QueueEntryStatus
    enqueued_at: datetime
    next_attempt_at: datetime

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryOut":
        return cls(
            id=entry.id,
            item_id=entry.item.id,
            title=entry.item.title,
            stage=entry.stage,
            error=entry.error,
            last_error=entry.last_error,
            attempt_count=entry.attempt_count,
            status=entry.status,
            enqueued_at=entry.enqueued_at,
            next_attempt_at=entry.next_attempt_at,
        )


class QueueProcessOut(BaseModel):
    processed: int
    succeeded: int
    failed: int
