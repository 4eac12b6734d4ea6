from fastapi import APIRouter, Depends, HTTPException, Query, status

from rawwire.core.auth import Principal
from rawwire.core.errors import ConflictError, NotFoundError, PermissionDenied, PublishFailed
from rawwire.core.security import get_machine_principal
from rawwire.runtime import Runtime, get_runtime
from rawwire.schemas.candidates import (
    AutoApproveRequest,
    CandidateOut,
    IngestRequest,
    IngestResult,
    LifecycleEvent,
    LifecycleState,
    TransitionRequest,
    Verdict,
)

router = APIRouter()


@router.post("", response_model=IngestResult)
async def ingest_candidates(
    payload: IngestRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> IngestResult:
    try:
        return await runtime.lifecycle.ingest(
            [row.to_work_item() for row in payload.items],
            actor=principal.subject,
            resubmit=payload.resubmit,
            check=principal.can,
        )
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("", response_model=list[CandidateOut])
async def list_candidates(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    state: LifecycleState | None = Query(default=None),
    verdict: Verdict | None = Query(default=None),
    source: str | None = Query(default=None),
) -> list[CandidateOut]:
    try:
        principal.require_scopes({"candidates:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    rows = await runtime.lifecycle.list_records(state=state, verdict=verdict, source=source, limit=limit, offset=offset)
    return [CandidateOut.from_record(row) for row in rows]


@router.post("/auto-approve", response_model=list[CandidateOut])
async def auto_approve_candidates(
    payload: AutoApproveRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> list[CandidateOut]:
    try:
        rows = await runtime.lifecycle.auto_approve_top(
            actor=principal.subject,
            per_source=payload.per_source,
            check=principal.can,
        )
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return [CandidateOut.from_record(row) for row in rows]


@router.get("/{record_id}", response_model=CandidateOut)
async def get_candidate(
    record_id: str,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> CandidateOut:
    try:
        principal.require_scopes({"candidates:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        record = await runtime.lifecycle.get(record_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CandidateOut.from_record(record)


@router.get("/{record_id}/events", response_model=list[LifecycleEvent])
async def list_candidate_events(
    record_id: str,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[LifecycleEvent]:
    try:
        principal.require_scopes({"candidates:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await runtime.lifecycle.events(record_id, limit=limit, offset=offset)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{record_id}/approve", response_model=CandidateOut)
async def approve_candidate(
    record_id: str,
    payload: TransitionRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> CandidateOut:
    try:
        record = await runtime.lifecycle.approve(
            record_id,
            actor=principal.subject,
            reason=payload.reason,
            check=principal.can,
        )
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CandidateOut.from_record(record)


@router.post("/{record_id}/reject", response_model=CandidateOut)
async def reject_candidate(
    record_id: str,
    payload: TransitionRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> CandidateOut:
    try:
        record = await runtime.lifecycle.reject(
            record_id,
            actor=principal.subject,
            reason=payload.reason,
            check=principal.can,
        )
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return CandidateOut.from_record(record)


@router.post("/{record_id}/publish", response_model=CandidateOut)
async def publish_candidate(
    record_id: str,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> CandidateOut:
    try:
        record = await runtime.lifecycle.publish(record_id, actor=principal.subject, check=principal.can)
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PublishFailed as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return CandidateOut.from_record(record)
