"""Redis-backed work queue shared by several worker processes.

Keys (prefix = queue name):
    {prefix}:jobs        hash  job_key -> payload; reserved until ack/fail
    {prefix}:delayed     zset  job_key scored by ready time in ms
    {prefix}:processing  zset  claimed job_key scored by visibility deadline in ms
    {prefix}:failed      list  most recent failures, trimmed to keep_failed_jobs

A claimed job that is neither acked nor failed before its visibility deadline
(worker died) goes back to {prefix}:delayed on the next dequeue.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import orjson
import redis.asyncio as redis

from core.logging import get_logger
from services.engine.models import StepJob

logger = get_logger(__name__)

# KEYS: jobs, delayed  ARGV: job_key, payload, ready_at_ms
ENQUEUE_SCRIPT = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
    return 0
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: jobs, delayed, processing  ARGV: now_ms, visible_until_ms
# Returns nil, {job_key} when the payload is gone, or {job_key, payload}
CLAIM_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], 0, ARGV[1])
for _, key in ipairs(expired) do
    redis.call('ZREM', KEYS[3], key)
    redis.call('ZADD', KEYS[2], ARGV[1], key)
end
local ready = redis.call('ZRANGEBYSCORE', KEYS[2], 0, ARGV[1], 'LIMIT', 0, 1)
if #ready == 0 then
    return nil
end
local key = ready[1]
redis.call('ZREM', KEYS[2], key)
local payload = redis.call('HGET', KEYS[1], key)
if not payload then
    return {key}
end
redis.call('ZADD', KEYS[3], ARGV[2], key)
return {key, payload}
"""


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisWorkQueue:
    """Delayed delivery through sorted sets, uniqueness through HSETNX.

    Enqueue and claim run as Lua scripts so each is a single atomic step on
    the server.
    """

    def __init__(self, client: "redis.Redis", name: str = "dagflow:steps",
                 keep_failed_jobs: int = 100, poll_interval: float = 0.5,
                 visibility_timeout: float = 300):
        self.redis = client
        self.name = name
        self.keep_failed_jobs = keep_failed_jobs
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self._inflight: Dict[str, str] = {}  # job.id -> job_key

    @property
    def jobs_key(self) -> str:
        return f"{self.name}:jobs"

    @property
    def delayed_key(self) -> str:
        return f"{self.name}:delayed"

    @property
    def processing_key(self) -> str:
        return f"{self.name}:processing"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    async def enqueue(self, job_key: str, job: StepJob, delay_ms: int = 0) -> bool:
        payload = orjson.dumps(job.to_dict())
        ready_at_ms = int(time.time() * 1000) + max(0, delay_ms)
        added = await self.redis.eval(ENQUEUE_SCRIPT, 2, self.jobs_key, self.delayed_key,
                                      job_key, payload, ready_at_ms)
        if not added:
            logger.debug("Duplicate job rejected", job_key=job_key)
            return False
        return True

    async def _claim_ready(self) -> Optional[StepJob]:
        now_ms = int(time.time() * 1000)
        visible_until_ms = now_ms + int(self.visibility_timeout * 1000)
        claimed = await self.redis.eval(CLAIM_SCRIPT, 3, self.jobs_key, self.delayed_key,
                                        self.processing_key, now_ms, visible_until_ms)
        if not claimed:
            return None
        job_key = _text(claimed[0])
        if len(claimed) < 2:
            logger.warning("Job payload missing", job_key=job_key)
            return None
        job = StepJob.from_dict(orjson.loads(claimed[1]))
        self._inflight[job.id] = job_key
        return job

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[StepJob]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = await self._claim_ready()
            if job is not None:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                return None
            sleep_for = self.poll_interval
            if deadline is not None:
                sleep_for = min(sleep_for, max(0.0, deadline - time.monotonic()))
            await asyncio.sleep(sleep_for)

    async def _release(self, job: StepJob) -> str:
        # Payload first: a leftover processing entry without payload is dropped on claim
        job_key = self._inflight.pop(job.id, None) or job.job_key
        await self.redis.hdel(self.jobs_key, job_key)
        await self.redis.zrem(self.processing_key, job_key)
        return job_key

    async def ack(self, job: StepJob) -> None:
        await self._release(job)

    async def fail(self, job: StepJob, error: str) -> None:
        job_key = await self._release(job)
        if self.keep_failed_jobs > 0:
            entry = orjson.dumps({"job_key": job_key, "job": job.to_dict(), "error": error,
                                  "failed_at": time.time()})
            await self.redis.lpush(self.failed_key, entry)
            await self.redis.ltrim(self.failed_key, 0, self.keep_failed_jobs - 1)
        logger.warning("Job failed", job_key=job_key, error=error)

    async def failed_jobs(self) -> List[Dict[str, Any]]:
        raw = await self.redis.lrange(self.failed_key, 0, -1)
        return [orjson.loads(item) for item in raw]

    async def size(self) -> int:
        return await self.redis.zcard(self.delayed_key)

    async def close(self) -> None:
        await self.redis.aclose()
