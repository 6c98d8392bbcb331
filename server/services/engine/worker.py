"""Step worker - consumes step jobs from the work queue with bounded concurrency."""

import asyncio
from typing import Optional, Set, TYPE_CHECKING

from core.logging import get_logger
from services.engine.models import JobKind, StepJob, StepOutcome

if TYPE_CHECKING:
    from services.engine.orchestrator import Engine
    from services.queue.base import WorkQueue

logger = get_logger(__name__)


class StepWorker:
    """Pulls jobs off the queue and hands them to the engine.

    A job is acked once the engine has applied it, whatever the step outcome.
    Only unexpected errors (database down, missing run) fail the job, which
    keeps it in the queue's failed-job list for debugging.
    """

    def __init__(self, engine: "Engine", queue: "WorkQueue",
                 concurrency: int = 5, poll_interval: float = 0.5):
        self.engine = engine
        self.queue = queue
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the consume loop as a background task."""
        if self._running:
            logger.warning("Step worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._consume_loop())
        logger.info("Step worker started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight jobs to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Step worker stopped")

    async def _consume_loop(self) -> None:
        while self._running:
            await self._semaphore.acquire()
            try:
                job = await self.queue.dequeue(timeout=self.poll_interval)
            except Exception as e:
                self._semaphore.release()
                logger.error("Dequeue failed", error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._run_job(job))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_job(self, job: StepJob) -> None:
        try:
            await self.process(job)
        finally:
            self._semaphore.release()

    async def run_once(self, timeout: Optional[float] = 0) -> bool:
        """Process at most one ready job inline. Returns False when none was ready."""
        job = await self.queue.dequeue(timeout=timeout)
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: StepJob) -> Optional[StepOutcome]:
        """Dispatch one job to the engine, then ack or fail it."""
        try:
            if job.kind == JobKind.COMPLETE_DEFERRED:
                outcome = await self.engine.complete_deferred(job.run_id, job.node_id, job.input)
            else:
                outcome = await self.engine.execute_node(job.run_id, job.node_id, job.input, job.retry_count)
        except Exception as e:
            logger.error("Step job failed", job_key=job.job_key, kind=job.kind.value, error=str(e))
            await self.queue.fail(job, str(e))
            return None

        await self.queue.ack(job)
        if outcome is not None:
            logger.debug("Step job processed", job_key=job.job_key, status=outcome.status.value)
        return outcome
