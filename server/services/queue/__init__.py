"""Step job queues.

MemoryWorkQueue serves single-process deployments and tests; RedisWorkQueue
lets several worker processes share one queue.
"""

from typing import Optional

import redis.asyncio as redis

from core.config import Settings
from .base import WorkQueue
from .memory import MemoryWorkQueue
from .redis_queue import RedisWorkQueue


def create_work_queue(settings: Settings, client: Optional["redis.Redis"] = None) -> WorkQueue:
    """Build the queue backend selected by QUEUE_BACKEND."""
    if settings.queue_backend == "redis":
        if client is None:
            if not settings.redis_url:
                raise ValueError("QUEUE_BACKEND=redis requires REDIS_URL")
            client = redis.from_url(settings.redis_url, decode_responses=False)
        return RedisWorkQueue(
            client,
            name=settings.queue_name,
            keep_failed_jobs=settings.keep_failed_jobs,
            poll_interval=settings.queue_poll_interval,
            visibility_timeout=settings.queue_visibility_timeout,
        )
    return MemoryWorkQueue(keep_failed_jobs=settings.keep_failed_jobs)


__all__ = [
    "WorkQueue",
    "MemoryWorkQueue",
    "RedisWorkQueue",
    "create_work_queue",
]
