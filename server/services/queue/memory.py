"""In-process work queue for single-process deployments and tests."""

import asyncio
import heapq
import itertools
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from core.logging import get_logger
from services.engine.models import StepJob

logger = get_logger(__name__)


class MemoryWorkQueue:
    """asyncio queue with a delay heap and unique job keys."""

    def __init__(self, keep_failed_jobs: int = 100):
        self._heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._pending: Dict[str, StepJob] = {}
        self._active: Dict[str, StepJob] = {}
        self._keys: Dict[str, str] = {}  # job.id -> job_key
        self._failed: Deque[Dict[str, Any]] = deque(maxlen=max(0, keep_failed_jobs))
        self._cond = asyncio.Condition()
        self._closed = False

    async def enqueue(self, job_key: str, job: StepJob, delay_ms: int = 0) -> bool:
        async with self._cond:
            if job_key in self._pending or job_key in self._active:
                logger.debug("Duplicate job rejected", job_key=job_key)
                return False
            ready_at = time.monotonic() + max(0, delay_ms) / 1000.0
            heapq.heappush(self._heap, (ready_at, next(self._seq), job_key))
            self._pending[job_key] = job
            self._keys[job.id] = job_key
            self._cond.notify_all()
            return True

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[StepJob]:
        deadline = None if timeout is None else time.monotonic() + timeout

        async with self._cond:
            while not self._closed:
                now = time.monotonic()
                if self._heap and self._heap[0][0] <= now:
                    _, _, job_key = heapq.heappop(self._heap)
                    job = self._pending.pop(job_key)
                    self._active[job_key] = job
                    return job

                wait: Optional[float] = self._heap[0][0] - now if self._heap else None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        return None

    def _release(self, job: StepJob) -> Optional[str]:
        job_key = self._keys.pop(job.id, None)
        if job_key is not None:
            self._active.pop(job_key, None)
        return job_key

    async def ack(self, job: StepJob) -> None:
        async with self._cond:
            self._release(job)

    async def fail(self, job: StepJob, error: str) -> None:
        async with self._cond:
            job_key = self._release(job)
            self._failed.append({"job_key": job_key, "job": job.to_dict(), "error": error,
                                 "failed_at": time.time()})
        logger.warning("Job failed", job_key=job_key, error=error)

    async def failed_jobs(self) -> List[Dict[str, Any]]:
        return list(self._failed)

    async def size(self) -> int:
        return len(self._pending)

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
