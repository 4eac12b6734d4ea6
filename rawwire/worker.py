from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from rawwire.core.config import Settings, get_settings
from rawwire.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from rawwire.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def retry_queue_loop(runtime: Runtime, settings: Settings) -> None:
    """Reprocess due retry-queue entries until cancelled."""
    backoff = settings.poll_interval_seconds
    while True:
        try:
            with tracer.start_as_current_span("worker.retry_queue_cycle"):
                outcome = await runtime.process_retry_queue()
                if outcome.processed:
                    logger.info(
                        "reprocessed retry queue processed=%s succeeded=%s failed=%s",
                        outcome.processed,
                        outcome.succeeded,
                        outcome.failed,
                    )
            backoff = settings.poll_interval_seconds
            await asyncio.sleep(settings.retry_queue_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - loop robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("retry queue iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


async def run_worker(runtime: Runtime | None = None) -> None:
    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="worker")
    runtime = runtime or build_runtime(settings)

    await runtime.scheduler.start()
    try:
        await retry_queue_loop(runtime, settings)
    finally:
        await runtime.scheduler.stop()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
