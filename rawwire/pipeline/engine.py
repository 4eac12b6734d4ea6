from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
from opentelemetry import trace

from rawwire.core.config import Settings, get_settings
from rawwire.core.errors import ExecutionTimeout, PermissionDenied, StepFailed, ValidationError
from rawwire.core.telemetry import bind_execution
from rawwire.pipeline.context import new_context
from rawwire.pipeline.steps import StepCallback, StepRunner, step_label
from rawwire.schemas.pipelines import (
    ExecutionStatus,
    PipelineExecution,
    PipelineStep,
    StepError,
    StepResult,
    TriggerResult,
)
from rawwire.services.store import InMemoryItemStore, ItemStore

if TYPE_CHECKING:
    from rawwire.pipeline.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ProgressCallback = Callable[[str, int, int], Any]

_ERROR_KINDS = {
    "failed": "critical_step_failure",
    "timeout": "execution_timeout",
    "cancelled": "cancelled",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def status_from_execution(execution: PipelineExecution) -> ExecutionStatus:
    total = execution.total_steps
    return ExecutionStatus(
        execution_id=execution.id,
        status=execution.status,
        progress=execution.completed_steps / total if total else 0.0,
        current_step=execution.current_step,
        total_steps=total,
        completed_steps=execution.completed_steps,
        failed_step=execution.failed_step,
        errors=list(execution.errors),
        error=execution.error,
    )


async def load_status(store: ItemStore, execution_id: str) -> ExecutionStatus:
    execution = await store.get_execution(execution_id)
    if execution is None:
        return ExecutionStatus(execution_id=execution_id, status="unknown", error="execution not found")
    return status_from_execution(execution)


async def cancel_execution(
    store: ItemStore,
    execution_id: str,
    scheduler: PipelineScheduler | None = None,
) -> bool:
    """Cancel a scheduled run outright or flag a running one.

    Running executions stop at the next step boundary. Terminal or unknown
    executions cannot be cancelled.
    """
    execution = await store.get_execution(execution_id)
    if execution is None or execution.is_terminal:
        return False

    if execution.status == "scheduled":
        if scheduler is not None:
            scheduler.unschedule(execution_id)
        execution.status = "cancelled"
        execution.cancel_requested = True
        execution.finished_at = _utcnow()
        execution.error = "cancelled before start"
    else:
        execution.cancel_requested = True
    await store.save_execution(execution)
    logger.info("pipeline cancel requested execution_id=%s status=%s", execution_id, execution.status)
    return True


class PipelineEngine:
    """Runs a fixed list of steps sequentially against a shared context.

    Synchronous triggers run in-process until completion, timeout or a critical
    failure. Asynchronous triggers persist the execution and hand it to the
    scheduler's worker pool.
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep],
        *,
        name: str = "default",
        settings: Settings | None = None,
        callbacks: Mapping[str, StepCallback] | None = None,
        http_client: httpx.AsyncClient | None = None,
        store: ItemStore | None = None,
        scheduler: PipelineScheduler | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = settings or get_settings()
        self.steps = list(steps)
        self.name = name
        self.store = store or InMemoryItemStore()
        self.scheduler = scheduler
        self.max_execution_seconds = settings.pipeline_max_execution_seconds
        self.retry_attempts = max(1, settings.pipeline_step_retry_attempts)
        self.retry_base_seconds = settings.pipeline_step_retry_base_seconds
        self.monotonic = monotonic
        self.sleep = sleep
        self.runner = StepRunner(
            callbacks,
            http_client=http_client,
            http_timeout_seconds=settings.pipeline_http_timeout_seconds,
            strict_interpolation=settings.pipeline_strict_interpolation,
            monotonic=monotonic,
        )
        self._progress_callbacks: list[ProgressCallback] = []

    def on_progress(self, callback: ProgressCallback) -> None:
        """Register ``callback(execution_id, current_step, total_steps)``.

        It is called after every finished step. The leading execution id lets one
        listener follow several concurrent runs of the same engine. The callback may
        be sync or async, and its errors are logged and ignored.
        """
        self._progress_callbacks.append(callback)

    async def trigger(self, payload: Mapping[str, Any] | None = None, *, async_: bool = False) -> TriggerResult:
        if not self.steps:
            raise ValidationError("pipeline has no steps")
        data = dict(payload or {})
        execution = PipelineExecution(
            pipeline=self.name,
            payload=data,
            steps=list(self.steps),
            total_steps=len(self.steps),
            context=new_context(data),
        )
        logger.info(
            "pipeline triggered pipeline=%s execution_id=%s steps=%s async=%s",
            self.name,
            execution.id,
            len(self.steps),
            async_,
        )

        if async_:
            if self.scheduler is None:
                raise ValidationError("asynchronous triggers require a scheduler")
            execution.status = "scheduled"
            await self.store.save_execution(execution)
            await self.scheduler.schedule(self, execution.id)
            return TriggerResult(success=True, execution_id=execution.id, status="scheduled")

        finished = await self.run_execution(execution)
        return self._result(finished)

    async def get_status(self, execution_id: str) -> ExecutionStatus:
        return await load_status(self.store, execution_id)

    async def cancel(self, execution_id: str) -> bool:
        return await cancel_execution(self.store, execution_id, self.scheduler)

    async def run_execution(self, execution: PipelineExecution) -> PipelineExecution:
        steps = execution.steps
        total = len(steps)
        deadline = self.monotonic() + self.max_execution_seconds
        context = execution.context or new_context(execution.payload)
        execution.context = context
        execution.status = "running"
        execution.total_steps = total
        await self._checkpoint(execution)

        with bind_execution(execution.id), tracer.start_as_current_span("pipeline.execute") as span:
            span.set_attribute("pipeline.name", execution.pipeline)
            span.set_attribute("pipeline.execution_id", execution.id)
            span.set_attribute("pipeline.total_steps", total)

            for index, step in enumerate(steps):
                execution.current_step = index
                await self._checkpoint(execution)
                if execution.cancel_requested:
                    return await self._finish(execution, "cancelled", error="cancelled by request")
                if self.monotonic() >= deadline:
                    return await self._finish(execution, "timeout", error=self._timeout_message())

                try:
                    result = await self._run_step(step, index, context, deadline)
                except ExecutionTimeout as exc:
                    execution.results.append(StepResult(index=index, name=step_label(step, index), success=False, error=str(exc)))
                    return await self._finish(execution, "timeout", error=str(exc))

                execution.results.append(result)
                output_key = step.output_key or f"step_{index}_result"
                if result.success:
                    context["previous_result"] = result.data
                    context[output_key] = result.data
                else:
                    execution.errors.append(StepError(step=index, name=result.name, error=result.error or "step failed"))
                    if step.critical:
                        execution.failed_step = index
                        logger.error(
                            "critical step failed; aborting pipeline execution_id=%s step=%s error=%s",
                            execution.id,
                            index,
                            result.error,
                        )
                        return await self._finish(execution, "failed", error=result.error)
                    logger.warning(
                        "non-critical step failed; continuing execution_id=%s step=%s error=%s",
                        execution.id,
                        index,
                        result.error,
                    )
                    context["previous_result"] = None
                    context[output_key] = None

                execution.completed_steps = index + 1
                execution.current_step = index + 1
                await self._notify_progress(execution.id, index + 1, total)

            return await self._finish(execution, "completed")

    async def _run_step(
        self,
        step: PipelineStep,
        index: int,
        context: dict[str, Any],
        deadline: float,
    ) -> StepResult:
        name = step_label(step, index)
        attempts = step.retry_attempts or self.retry_attempts
        started = self.monotonic()
        last_error = "step failed"
        attempt = 0
        with tracer.start_as_current_span("pipeline.step") as span:
            span.set_attribute("pipeline.step.index", index)
            span.set_attribute("pipeline.step.type", step.type)
            while attempt < attempts:
                attempt += 1
                try:
                    data = await self._run_bounded(step, name, context, deadline)
                except (ValidationError, PermissionDenied) as exc:
                    last_error = str(exc)
                    break
                except StepFailed as exc:
                    last_error = str(exc)
                    logger.warning("step attempt failed step=%s attempt=%s error=%s", name, attempt, last_error)
                else:
                    return StepResult(
                        index=index,
                        name=name,
                        success=True,
                        data=data,
                        attempts=attempt,
                        duration_ms=(self.monotonic() - started) * 1000,
                    )

                if attempt < attempts:
                    delay = self.retry_base_seconds * (2 ** (attempt - 1))
                    if self.monotonic() + delay >= deadline:
                        break
                    await self.sleep(delay)

            span.set_attribute("pipeline.step.failed", True)

        return StepResult(
            index=index,
            name=name,
            success=False,
            error=f"failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            duration_ms=(self.monotonic() - started) * 1000,
        )

    async def _run_bounded(self, step: PipelineStep, name: str, context: dict[str, Any], deadline: float) -> Any:
        remaining = deadline - self.monotonic()
        if remaining <= 0:
            raise ExecutionTimeout(self._timeout_message())
        try:
            return await asyncio.wait_for(self.runner.run(step, context, deadline=deadline), timeout=remaining)
        except asyncio.TimeoutError as exc:
            logger.warning("step cut off by the execution deadline step=%s remaining=%.3fs", name, remaining)
            raise ExecutionTimeout(f"step {name} did not finish within the remaining {remaining:.3f}s") from exc

    async def _checkpoint(self, execution: PipelineExecution) -> None:
        stored = await self.store.get_execution(execution.id)
        if stored is not None and stored.cancel_requested:
            execution.cancel_requested = True
        await self.store.save_execution(execution)

    async def _finish(self, execution: PipelineExecution, status: str, *, error: str | None = None) -> PipelineExecution:
        execution.status = status
        execution.error = error
        execution.finished_at = _utcnow()
        await self._checkpoint(execution)
        logger.info(
            "pipeline finished pipeline=%s execution_id=%s status=%s completed_steps=%s/%s",
            execution.pipeline,
            execution.id,
            status,
            execution.completed_steps,
            execution.total_steps,
        )
        return execution

    async def _notify_progress(self, execution_id: str, current: int, total: int) -> None:
        for callback in self._progress_callbacks:
            try:
                outcome = callback(execution_id, current, total)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("progress callback failed execution_id=%s", execution_id)

    def _timeout_message(self) -> str:
        return f"pipeline exceeded its {self.max_execution_seconds}s time budget"

    @staticmethod
    def _result(execution: PipelineExecution) -> TriggerResult:
        return TriggerResult(
            success=execution.status == "completed",
            execution_id=execution.id,
            status=execution.status,
            error=execution.error,
            error_kind=_ERROR_KINDS.get(execution.status),
            failed_step=execution.failed_step,
            completed_steps=execution.completed_steps,
            context=execution.context,
        )
