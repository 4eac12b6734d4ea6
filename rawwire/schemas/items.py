from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rawwire.core.urls import normalize_url

Recommendation = Literal["approve", "review", "reject"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str = ""
    body: str = ""
    source: str = "unknown"
    url: str
    canonical_url: str = ""
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _derive_canonical_url(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("canonical_url") and data.get("url"):
            data = dict(data)
            data["canonical_url"] = normalize_url(str(data["url"]))
        return data


class ScoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    score: int = Field(ge=0, le=100)
    criteria: dict[str, int] = Field(default_factory=dict)
    rationale: str = ""
    scorer: str
    recommendation: Recommendation = "review"
    fallback: bool = False
    fallback_reason: str | None = None
    scored_at: datetime = Field(default_factory=_utcnow)


class WorkItemIn(BaseModel):
    id: str | None = None
    title: str = ""
    body: str = ""
    source: str = "unknown"
    url: str
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_work_item(self) -> WorkItem:
        payload = self.model_dump(exclude_none=True)
        return WorkItem(**payload)


class WeightsUpdateRequest(BaseModel):
    weights: dict[str, float]


class WeightsOut(BaseModel):
    weights: dict[str, float]
