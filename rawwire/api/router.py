from fastapi import APIRouter

from rawwire.api.routes import candidates, health, pipelines, queue, scoring, settings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(candidates.router, prefix="/candidates", tags=["lifecycle"])
api_router.include_router(scoring.router, prefix="/scoring", tags=["scoring"])
api_router.include_router(queue.router, prefix="/queue", tags=["scoring"])
api_router.include_router(pipelines.router, prefix="/pipelines", tags=["pipelines"])
api_router.include_router(settings.router, prefix="/settings", tags=["admin"])
