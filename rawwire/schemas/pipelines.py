from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from rawwire.core.errors import CriticalStepFailure, ExecutionTimeout

ExecutionState = Literal["running", "completed", "failed", "timeout", "cancelled", "scheduled"]
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "failed", "timeout", "cancelled"})

ConditionOperator = Literal[
    "equals",
    "strict_equals",
    "not_equals",
    "greater",
    "less",
    "contains",
    "exists",
    "empty",
    "not_empty",
]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MapTransform(BaseModel):
    type: Literal["map"] = "map"
    fields: list[str] | dict[str, str]


class FilterTransform(BaseModel):
    type: Literal["filter"] = "filter"
    field: str
    operator: ConditionOperator = "exists"
    value: Any = None


class PluckTransform(BaseModel):
    type: Literal["pluck"] = "pluck"
    field: str


class FirstTransform(BaseModel):
    type: Literal["first"] = "first"


class LastTransform(BaseModel):
    type: Literal["last"] = "last"


class CountTransform(BaseModel):
    type: Literal["count"] = "count"


class JsonEncodeTransform(BaseModel):
    type: Literal["json_encode"] = "json_encode"


class JsonDecodeTransform(BaseModel):
    type: Literal["json_decode"] = "json_decode"


Transform = Annotated[
    Union[
        MapTransform,
        FilterTransform,
        PluckTransform,
        FirstTransform,
        LastTransform,
        CountTransform,
        JsonEncodeTransform,
        JsonDecodeTransform,
    ],
    Field(discriminator="type"),
]


class StepBase(BaseModel):
    name: str | None = None
    critical: bool = True
    output_key: str | None = None
    retry_attempts: int | None = Field(default=None, ge=1)


class CallbackStep(StepBase):
    type: Literal["callback"] = "callback"
    callback: str


class HttpStep(StepBase):
    type: Literal["http"] = "http"
    url: str
    method: HttpMethod = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: float | None = Field(default=None, gt=0)


class TransformStep(StepBase):
    type: Literal["transform"] = "transform"
    transforms: list[Transform] = Field(default_factory=list)


class ConditionStep(StepBase):
    type: Literal["condition"] = "condition"
    field: str
    operator: ConditionOperator = "equals"
    value: Any = None


class DelayStep(StepBase):
    type: Literal["delay"] = "delay"
    seconds: float = Field(default=1.0, ge=0)


PipelineStep = Annotated[
    Union[CallbackStep, HttpStep, TransformStep, ConditionStep, DelayStep],
    Field(discriminator="type"),
]


class StepResult(BaseModel):
    index: int
    name: str
    success: bool
    data: Any = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0


class StepError(BaseModel):
    step: int
    name: str
    error: str


class PipelineExecution(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    pipeline: str = "default"
    status: ExecutionState = "running"
    current_step: int = 0
    total_steps: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    steps: list[PipelineStep] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    results: list[StepResult] = Field(default_factory=list)
    errors: list[StepError] = Field(default_factory=list)
    failed_step: int | None = None
    completed_steps: int = 0
    error: str | None = None
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class TriggerResult(BaseModel):
    success: bool
    execution_id: str
    status: ExecutionState
    error: str | None = None
    error_kind: str | None = None
    failed_step: int | None = None
    completed_steps: int = 0
    context: dict[str, Any] | None = None

    def raise_for_status(self) -> None:
        if self.status == "timeout":
            raise ExecutionTimeout(self.error or "pipeline timed out", completed_steps=self.completed_steps)
        if self.status == "failed" and self.failed_step is not None:
            raise CriticalStepFailure(self.error or "critical step failed", step_index=self.failed_step)


class ExecutionStatus(BaseModel):
    execution_id: str
    status: ExecutionState | Literal["unknown"]
    progress: float = 0.0
    current_step: int = 0
    total_steps: int = 0
    completed_steps: int = 0
    failed_step: int | None = None
    errors: list[StepError] = Field(default_factory=list)
    error: str | None = None


class PipelineDefinition(BaseModel):
    name: str
    steps: list[PipelineStep] = Field(min_length=1)


class TriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payload: dict[str, Any] = Field(default_factory=dict)
    run_async: bool = Field(default=False, alias="async")


class AdhocTriggerRequest(TriggerRequest):
    name: str = "adhoc"
    steps: list[PipelineStep] = Field(min_length=1)
