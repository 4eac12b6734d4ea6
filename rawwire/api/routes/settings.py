from fastapi import APIRouter, Depends, HTTPException, status

from rawwire.core.auth import Principal
from rawwire.core.errors import ValidationError
from rawwire.core.security import get_machine_principal
from rawwire.runtime import Runtime, get_runtime
from rawwire.schemas.items import WeightsOut, WeightsUpdateRequest

router = APIRouter()


@router.get("/weights", response_model=WeightsOut)
async def get_weights(
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> WeightsOut:
    try:
        principal.require_scopes({"candidates:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return WeightsOut(weights=runtime.weights.weights)


@router.put("/weights", response_model=WeightsOut)
async def update_weights(
    payload: WeightsUpdateRequest,
    principal: Principal = Depends(get_machine_principal),
    runtime: Runtime = Depends(get_runtime),
) -> WeightsOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        weights = runtime.update_weights(payload.weights)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return WeightsOut(weights=weights.weights)
