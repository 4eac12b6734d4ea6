from fastapi import APIRouter, Depends

from rawwire.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    return {
        "status": "ok",
        "scorer": runtime.scorer.name,
        "scheduler_running": runtime.scheduler.running,
        "pipelines": runtime.registry.names(),
    }
