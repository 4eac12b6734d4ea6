from fastapi import APIRouter, Depends, HTTPException, status

from rawwire.core.auth import Principal
from rawwire.core.errors import NotFoundError, ValidationError
from rawwire.core.security import get_machine_principal
from rawwire.pipeline.engine import PipelineEngine
from rawwire.runtime import Runtime, get_runtime
from rawwire.schemas.pipelines import AdhocTriggerRequest, ExecutionStatus, TriggerRequest, TriggerResult

router = APIRouter()


async def _trigger(engine: PipelineEngine, payload: TriggerRequest, runtime: Runtime) -> TriggerResult:
    if payload.run_async and not runtime.scheduler.running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="pipeline scheduler is not running")
    try:
        return await engine.trigger(payload.payload, async_=payload.run_async)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("")
async def list_pipelines(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, list[str]]:
    try:
        principal.require_scopes({"pipelines:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return {"pipelines": runtime.registry.names()}


@router.post("", response_model=TriggerResult)
async def trigger_adhoc_pipeline(
    payload: AdhocTriggerRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> TriggerResult:
    try:
        principal.require_scopes({"pipelines:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return await _trigger(runtime.engine(payload.name, payload.steps, check=principal.can), payload, runtime)


@router.post("/{name}/trigger", response_model=TriggerResult)
async def trigger_pipeline(
    name: str,
    payload: TriggerRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> TriggerResult:
    try:
        principal.require_scopes({"pipelines:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        engine = runtime.engine_for(name, check=principal.can)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return await _trigger(engine, payload, runtime)


@router.get("/executions/{execution_id}", response_model=ExecutionStatus)
async def get_execution_status(
    execution_id: str,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> ExecutionStatus:
    try:
        principal.require_scopes({"pipelines:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    execution_status = await runtime.scheduler.get_status(execution_id)
    if execution_status.status == "unknown":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="execution not found")
    return execution_status


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, bool]:
    try:
        principal.require_scopes({"pipelines:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return {"cancelled": await runtime.scheduler.cancel(execution_id)}
