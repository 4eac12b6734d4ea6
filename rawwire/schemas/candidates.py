from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from rawwire.schemas.items import ScoreResult, WorkItem, WorkItemIn

LifecycleState = Literal["candidate", "archived", "approved", "content"]
Verdict = Literal["accepted", "rejected"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    item: WorkItem
    canonical_url: str
    source: str
    state: LifecycleState = "candidate"
    verdict: Verdict | None = None
    score: ScoreResult | None = None
    content_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state == "content" or (self.state == "archived" and self.verdict == "rejected")


class LifecycleEvent(BaseModel):
    id: int = 0
    record_id: str
    event_type: str
    from_state: LifecycleState | None = None
    to_state: LifecycleState
    from_verdict: Verdict | None = None
    to_verdict: Verdict | None = None
    actor: str
    reason: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class ContentRecord(BaseModel):
    content_id: str
    record_id: str
    title: str
    body: str
    url: str
    source: str
    score: int | None = None
    published_at: datetime = Field(default_factory=_utcnow)


class IngestResult(BaseModel):
    accepted: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)


class CandidateOut(BaseModel):
    id: str
    item_id: str
    title: str
    url: str
    canonical_url: str
    source: str
    state: LifecycleState
    verdict: Verdict | None = None
    score: int | None = None
    scorer: str | None = None
    recommendation: str | None = None
    content_id: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: LifecycleRecord) -> "CandidateOut":
        return cls(
            id=record.id,
            item_id=record.item.id,
            title=record.item.title,
            url=record.item.url,
            canonical_url=record.canonical_url,
            source=record.source,
            state=record.state,
            verdict=record.verdict,
            score=record.score.score if record.score else None,
            scorer=record.score.scorer if record.score else None,
            recommendation=record.score.recommendation if record.score else None,
            content_id=record.content_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class IngestRequest(BaseModel):
    items: list[WorkItemIn] = Field(min_length=1)
    resubmit: bool = False


class ScoreCandidatesRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class ScoreCandidatesOut(BaseModel):
    scored: int
    accepted: int
    rejected: int
    fallback: int


class TransitionRequest(BaseModel):
    reason: str | None = None


class AutoApproveRequest(BaseModel):
    per_source: int | None = Field(default=None, ge=1)
