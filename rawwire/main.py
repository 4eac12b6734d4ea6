from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from rawwire.api.router import api_router
from rawwire.core.config import get_settings
from rawwire.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from rawwire.runtime import get_runtime
from rawwire.worker import retry_queue_loop

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    runtime = application.dependency_overrides.get(get_runtime, get_runtime)()
    await runtime.scheduler.start()
    retry_task: asyncio.Task[None] | None = None
    if runtime.settings.background_workers_enabled:
        retry_task = asyncio.create_task(retry_queue_loop(runtime, runtime.settings), name="retry-queue-loop")
    try:
        yield
    finally:
        if retry_task is not None:
            retry_task.cancel()
            await asyncio.gather(retry_task, return_exceptions=True)
        await runtime.scheduler.stop()
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        get_runtime.cache_clear()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, app)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
