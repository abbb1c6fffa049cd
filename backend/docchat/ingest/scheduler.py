"""Background execution of ingest runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from docchat.core.errors import ProcessingError, RateLimitError
from docchat.core.logging import bind_context, get_logger, log_context
from docchat.core.metrics import INGEST_JOBS_ACTIVE
from docchat.ingest.pipeline import IngestPipeline
from docchat.ingest.types import IngestOutcome, IngestRequest
from docchat.models.entities import ProcessingEvent
from docchat.utils.ids import new_id

logger = get_logger(__name__)

CAPACITY_RETRY_AFTER_SECONDS = 30


@dataclass(slots=True)
class JobHandle:
    job_id: str
    event_id: str
    document_slug: str


class IngestionScheduler:
    """Run each ingest as its own task, acknowledging the caller immediately."""

    def __init__(self, pipeline: IngestPipeline, max_concurrent_jobs: int = 5) -> None:
        self.pipeline = pipeline
        self.max_concurrent_jobs = max_concurrent_jobs
        self._tasks: dict[str, asyncio.Task[IngestOutcome | None]] = {}
        self._handles: dict[str, JobHandle] = {}

    @property
    def active_jobs(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def submit(self, request: IngestRequest) -> JobHandle:
        if self.active_jobs >= self.max_concurrent_jobs:
            raise RateLimitError(
                "Too many documents are being processed, try again shortly",
                retry_after=CAPACITY_RETRY_AFTER_SECONDS,
                context={"active_jobs": self.active_jobs, "max_jobs": self.max_concurrent_jobs},
            )
        event = self.pipeline.open_event(request)
        handle = JobHandle(job_id=new_id("job"), event_id=event.id, document_slug=request.document_slug)
        task = asyncio.get_running_loop().create_task(self._run(handle, request, event), name=handle.job_id)
        self._tasks[handle.job_id] = task
        self._handles[handle.job_id] = handle
        task.add_done_callback(lambda _task, job_id=handle.job_id: self._forget(job_id))
        return handle

    async def _run(self, handle: JobHandle, request: IngestRequest, event: ProcessingEvent) -> IngestOutcome | None:
        INGEST_JOBS_ACTIVE.inc()
        with bind_context(job_id=handle.job_id, document_slug=handle.document_slug):
            try:
                return await self.pipeline.run(request, event=event)
            except ProcessingError as exc:
                # The pipeline has already recorded the failure on the event.
                logger.warning(
                    "Ingest job %s failed",
                    handle.job_id,
                    extra=log_context(error=exc.to_dict()),
                )
                return None
            finally:
                INGEST_JOBS_ACTIVE.dec()

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._handles.pop(job_id, None)

    async def wait(self) -> None:
        """Wait for all running jobs to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running jobs; each is left with a failed event."""
        handles = list(self._handles.values())
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in handles:
            # A task cancelled before its first step never ran its own cleanup.
            if self.pipeline.abandon(handle.event_id, "Ingestion was cancelled by shutdown"):
                logger.warning("Abandoned ingest job %s", handle.job_id, extra=log_context(event_id=handle.event_id))


__all__ = ["IngestionScheduler", "JobHandle", "CAPACITY_RETRY_AFTER_SECONDS"]
