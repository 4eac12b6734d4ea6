from fastapi import APIRouter, Depends, HTTPException, Query, status

from rawwire.core.auth import Principal
from rawwire.core.security import get_machine_principal
from rawwire.runtime import Runtime, get_runtime
from rawwire.schemas.queue import QueueEntryOut, QueueProcessOut
from rawwire.services.semantic_scorer import SEMANTIC_STAGE, SemanticScorer

router = APIRouter()


@router.get("/pending", response_model=list[QueueEntryOut])
async def list_pending_entries(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
    stage: str = Query(default=SEMANTIC_STAGE),
) -> list[QueueEntryOut]:
    try:
        principal.require_scopes({"queue:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return [QueueEntryOut.from_entry(entry) for entry in await runtime.retry_queue.list_pending(stage)]


@router.get("/failed", response_model=list[QueueEntryOut])
async def list_failed_entries(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
    stage: str = Query(default=SEMANTIC_STAGE),
) -> list[QueueEntryOut]:
    try:
        principal.require_scopes({"queue:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return [QueueEntryOut.from_entry(entry) for entry in await runtime.retry_queue.list_failed(stage)]


@router.post("/process", response_model=QueueProcessOut)
async def process_queue(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> QueueProcessOut:
    try:
        principal.require_scopes({"scoring:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not isinstance(runtime.scorer, SemanticScorer):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="semantic scoring is not configured")
    return await runtime.process_retry_queue()
