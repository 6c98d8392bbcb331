"""Work queue protocol shared by the memory and Redis backends."""

from typing import Any, Dict, List, Optional, Protocol

from services.engine.models import StepJob


class WorkQueue(Protocol):
    """Durable-ish step job queue with delayed delivery and unique job keys.

    A job key stays reserved from enqueue until ack/fail, so enqueuing the
    same (run, node, attempt) twice while the first copy is pending or in
    flight is rejected.
    """

    async def enqueue(self, job_key: str, job: StepJob, delay_ms: int = 0) -> bool:
        """Schedule a job. Returns False if the key is already pending or active."""
        ...

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[StepJob]:
        """Next ready job, or None once timeout seconds pass without one."""
        ...

    async def ack(self, job: StepJob) -> None:
        ...

    async def fail(self, job: StepJob, error: str) -> None:
        """Release the key and keep the job in the failed list for debugging."""
        ...

    async def failed_jobs(self) -> List[Dict[str, Any]]:
        ...

    async def size(self) -> int:
        """Number of pending (ready or delayed) jobs."""
        ...

    async def close(self) -> None:
        ...
