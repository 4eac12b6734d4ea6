from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from rawwire.core.errors import ExecutionTimeout, PermissionDenied, StepFailed, ValidationError
from rawwire.pipeline.context import MISSING, interpolate, interpolate_value, resolve_path
from rawwire.pipeline.transforms import apply_transforms, evaluate_condition
from rawwire.schemas.pipelines import (
    CallbackStep,
    ConditionStep,
    DelayStep,
    HttpStep,
    PipelineStep,
    TransformStep,
)

logger = logging.getLogger(__name__)

StepCallback = Callable[[dict[str, Any]], Any]

BODY_METHODS = {"POST", "PUT", "PATCH"}


def step_label(step: PipelineStep, index: int) -> str:
    return step.name or f"{step.type}_{index}"


class StepRunner:
    """Evaluates one step against the execution context and returns its output."""

    def __init__(
        self,
        callbacks: Mapping[str, StepCallback] | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        http_timeout_seconds: float = 30.0,
        strict_interpolation: bool = False,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callbacks = dict(callbacks or {})
        self.http_client = http_client
        self.http_timeout_seconds = http_timeout_seconds
        self.strict_interpolation = strict_interpolation
        self.monotonic = monotonic

    async def run(self, step: PipelineStep, context: dict[str, Any], *, deadline: float) -> Any:
        if isinstance(step, CallbackStep):
            return await self._run_callback(step, context)
        if isinstance(step, HttpStep):
            return await self._run_http(step, context, deadline=deadline)
        if isinstance(step, TransformStep):
            source = context.get("previous_result")
            if source is None:
                source = context.get("data")
            return apply_transforms(source, step.transforms)
        if isinstance(step, ConditionStep):
            actual = resolve_path(context, step.field)
            passed = evaluate_condition(actual, step.operator, step.value)
            return {
                "condition_passed": passed,
                "field": step.field,
                "actual": None if actual is MISSING else actual,
                "expected": step.value,
            }
        if isinstance(step, DelayStep):
            return await self._run_delay(step, deadline=deadline)
        raise ValidationError(f"unsupported step type: {type(step).__name__}")

    async def _run_callback(self, step: CallbackStep, context: dict[str, Any]) -> Any:
        callback = self.callbacks.get(step.callback)
        if callback is None:
            raise ValidationError(f"callback is not registered: {step.callback}")
        try:
            outcome = callback(context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except (ValidationError, ExecutionTimeout, PermissionDenied):
            raise
        except Exception as exc:
            raise StepFailed(f"callback {step.callback} raised {type(exc).__name__}: {exc}") from exc
        return outcome

    async def _run_http(self, step: HttpStep, context: dict[str, Any], *, deadline: float) -> Any:
        strict = self.strict_interpolation
        url = interpolate(step.url, context, strict=strict)
        headers = {key: interpolate(value, context, strict=strict) for key, value in step.headers.items()}
        request_kwargs: dict[str, Any] = {"headers": headers}
        if step.method in BODY_METHODS and step.body is not None:
            body = interpolate_value(step.body, context, strict=strict)
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        timeout = min(step.timeout or self.http_timeout_seconds, max(deadline - self.monotonic(), 0.0))
        try:
            if self.http_client is not None:
                response = await self.http_client.request(step.method, url, timeout=timeout, **request_kwargs)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(step.method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            raise StepFailed(f"{step.method} {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise StepFailed(f"{step.method} {url} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _run_delay(self, step: DelayStep, *, deadline: float) -> dict[str, Any]:
        remaining = deadline - self.monotonic()
        if step.seconds > remaining:
            await asyncio.sleep(max(remaining, 0.0))
            raise ExecutionTimeout(f"delay of {step.seconds}s exceeds the remaining execution budget")
        await asyncio.sleep(step.seconds)
        return {"delayed_seconds": step.seconds}
