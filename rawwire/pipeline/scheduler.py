from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from rawwire.core.errors import NotFoundError
from rawwire.pipeline.engine import cancel_execution, load_status
from rawwire.schemas.pipelines import ExecutionStatus, PipelineDefinition
from rawwire.services.store import ItemStore

if TYPE_CHECKING:
    from rawwire.pipeline.engine import PipelineEngine

logger = logging.getLogger(__name__)


class PipelineRegistry:
    """Named pipeline definitions that can be triggered by name."""

    def __init__(self, definitions: list[PipelineDefinition] | None = None) -> None:
        self._definitions: dict[str, PipelineDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: PipelineDefinition) -> None:
        self._definitions[definition.name] = definition

    def get(self, name: str) -> PipelineDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise NotFoundError(f"pipeline not registered: {name}")
        return definition

    def names(self) -> list[str]:
        return sorted(self._definitions)


class PipelineScheduler:
    """Queue-fed worker pool for asynchronous pipeline runs.

    Executions are persisted by the engine before they are queued; workers reload
    them from the store and skip anything cancelled in the meantime.
    """

    def __init__(self, store: ItemStore, *, concurrency: int = 2) -> None:
        self.store = store
        self.concurrency = max(1, concurrency)
        self.queue: asyncio.Queue[tuple[PipelineEngine, str]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._unscheduled: set[str] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._work(index), name=f"pipeline-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("pipeline scheduler started workers=%s", self.concurrency)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("pipeline scheduler stopped")

    async def drain(self) -> None:
        await self.queue.join()

    async def schedule(self, engine: PipelineEngine, execution_id: str) -> None:
        self._unscheduled.discard(execution_id)
        await self.queue.put((engine, execution_id))

    def unschedule(self, execution_id: str) -> None:
        self._unscheduled.add(execution_id)

    async def get_status(self, execution_id: str) -> ExecutionStatus:
        return await load_status(self.store, execution_id)

    async def cancel(self, execution_id: str) -> bool:
        return await cancel_execution(self.store, execution_id, self)

    async def _work(self, index: int) -> None:
        while True:
            engine, execution_id = await self.queue.get()
            try:
                await self._run_one(engine, execution_id)
            except Exception:
                logger.exception("pipeline worker error worker=%s execution_id=%s", index, execution_id)
            finally:
                self.queue.task_done()

    async def _run_one(self, engine: PipelineEngine, execution_id: str) -> None:
        if execution_id in self._unscheduled:
            self._unscheduled.discard(execution_id)
            logger.info("skipping unscheduled pipeline execution_id=%s", execution_id)
            return

        execution = await self.store.get_execution(execution_id)
        if execution is None or execution.status != "scheduled":
            logger.info("skipping pipeline execution_id=%s; no longer scheduled", execution_id)
            return

        try:
            await engine.run_execution(execution)
        except Exception as exc:
            logger.exception("scheduled pipeline crashed execution_id=%s", execution_id)
            execution.status = "failed"
            execution.error = f"{type(exc).__name__}: {exc}"
            execution.finished_at = datetime.now(timezone.utc)
            await self.store.save_execution(execution)
