from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from rawwire.core.auth import Principal
from rawwire.core.errors import PermissionDenied
from rawwire.core.security import get_machine_principal
from rawwire.runtime import Runtime, get_runtime
from rawwire.schemas.candidates import ScoreCandidatesOut, ScoreCandidatesRequest
from rawwire.schemas.items import ScoreResult, WorkItemIn

router = APIRouter()


class ScoreItemsRequest(BaseModel):
    items: list[WorkItemIn] = Field(min_length=1, max_length=100)


@router.post("/candidates", response_model=ScoreCandidatesOut)
async def score_candidates(
    payload: ScoreCandidatesRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> ScoreCandidatesOut:
    try:
        archived = await runtime.lifecycle.score_candidates(
            runtime.scorer,
            actor=principal.subject,
            limit=payload.limit,
            check=principal.can,
        )
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return ScoreCandidatesOut(
        scored=len(archived),
        accepted=sum(1 for record in archived if record.verdict == "accepted"),
        rejected=sum(1 for record in archived if record.verdict == "rejected"),
        fallback=sum(1 for record in archived if record.score is not None and record.score.fallback),
    )


@router.post("/items", response_model=list[ScoreResult])
async def score_items(
    payload: ScoreItemsRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> list[ScoreResult]:
    try:
        principal.require_scopes({"scoring:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return await runtime.scorer.score_batch([row.to_work_item() for row in payload.items])
