"""
Tests for the work queue backends and the step worker's job handling
"""

import asyncio
import time
from unittest.mock import AsyncMock

import orjson
import pytest

from core.config import Settings
from services.engine.models import JobKind, StepJob
from services.queue import MemoryWorkQueue, RedisWorkQueue, create_work_queue


def job(node_id="A", retry_count=0, kind=JobKind.EXECUTE, run_id="run-1"):
    return StepJob(run_id=run_id, node_id=node_id, retry_count=retry_count, kind=kind)


def test_job_key():
    assert job().job_key == "run-1:A:0"
    assert job(retry_count=2).job_key == "run-1:A:2"
    assert job(kind=JobKind.COMPLETE_DEFERRED).job_key == "run-1:A:0:deferred"


def test_job_dict_round_trip_keeps_kind():
    original = StepJob(run_id="r", node_id="n", input={"a": [1]}, retry_count=1, kind=JobKind.COMPLETE_DEFERRED)

    restored = StepJob.from_dict(original.to_dict())

    assert restored == original


@pytest.mark.asyncio
async def test_duplicate_key_rejected_while_pending_or_active():
    queue = MemoryWorkQueue()
    first = job()

    assert await queue.enqueue(first.job_key, first) is True
    assert await queue.enqueue(first.job_key, job()) is False
    assert await queue.size() == 1

    taken = await queue.dequeue(timeout=0.1)
    assert taken is first
    assert await queue.enqueue(first.job_key, job()) is False

    await queue.ack(taken)
    assert await queue.enqueue(first.job_key, job()) is True


@pytest.mark.asyncio
async def test_different_attempts_are_distinct():
    queue = MemoryWorkQueue()
    assert await queue.enqueue("run-1:A:0", job())
    assert await queue.enqueue("run-1:A:1", job(retry_count=1))
    assert await queue.size() == 2


@pytest.mark.asyncio
async def test_delayed_job_waits():
    queue = MemoryWorkQueue()
    late, early = job("late"), job("early")
    await queue.enqueue(late.job_key, late, delay_ms=150)
    await queue.enqueue(early.job_key, early)

    assert (await queue.dequeue(timeout=0.1)).node_id == "early"
    assert await queue.dequeue(timeout=0) is None

    started = time.monotonic()
    assert (await queue.dequeue(timeout=1)).node_id == "late"
    assert time.monotonic() - started < 1


@pytest.mark.asyncio
async def test_enqueue_wakes_waiting_consumer():
    queue = MemoryWorkQueue()
    waiter = asyncio.create_task(queue.dequeue(timeout=2))
    await asyncio.sleep(0.05)

    item = job()
    await queue.enqueue(item.job_key, item)

    assert await waiter is item


@pytest.mark.asyncio
async def test_failed_jobs_are_bounded_and_release_key():
    queue = MemoryWorkQueue(keep_failed_jobs=2)
    for retry_count in range(3):
        item = job(retry_count=retry_count)
        await queue.enqueue(item.job_key, item)
        await queue.fail(await queue.dequeue(timeout=0.1), "boom")

    failed = await queue.failed_jobs()
    assert [entry["job_key"] for entry in failed] == ["run-1:A:1", "run-1:A:2"]
    assert failed[0]["error"] == "boom"
    assert await queue.enqueue("run-1:A:2", job(retry_count=2)) is True


@pytest.mark.asyncio
async def test_close_unblocks_dequeue():
    queue = MemoryWorkQueue()
    waiter = asyncio.create_task(queue.dequeue())
    await asyncio.sleep(0.05)

    await queue.close()

    assert await asyncio.wait_for(waiter, timeout=1) is None


def test_factory_defaults_to_memory():
    assert isinstance(create_work_queue(Settings()), MemoryWorkQueue)


def test_factory_redis_requires_url():
    with pytest.raises(ValueError):
        create_work_queue(Settings(queue_backend="redis", redis_url=None))


@pytest.mark.asyncio
async def test_worker_fails_job_for_unknown_run(worker, queue):
    orphan = StepJob(run_id="nope", node_id="A")
    await queue.enqueue(orphan.job_key, orphan)

    assert await worker.run_once(timeout=0.1) is True

    failed = await queue.failed_jobs()
    assert failed[0]["job_key"] == "nope:A:0"
    assert "not found" in failed[0]["error"]
    assert await worker.run_once(timeout=0) is False


# ============================================================================
# Redis backend (client mocked)
# ============================================================================

@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.eval.return_value = 1
    return client


def _script_call(client):
    """(script, keys, args) of the last EVAL"""
    script, numkeys, *rest = client.eval.await_args.args
    return script, rest[:numkeys], rest[numkeys:]


@pytest.mark.asyncio
async def test_redis_enqueue_is_one_atomic_script(redis_client):
    """Reservation and scheduling happen in a single EVAL"""
    queue = RedisWorkQueue(redis_client, name="q")
    item = job()

    assert await queue.enqueue(item.job_key, item, delay_ms=500) is True

    redis_client.eval.assert_awaited_once()
    script, keys, args = _script_call(redis_client)
    assert "HSETNX" in script and "ZADD" in script
    assert keys == ["q:jobs", "q:delayed"]
    assert args[0] == "run-1:A:0"
    assert orjson.loads(args[1]) == item.to_dict()
    assert args[2] >= int(time.time() * 1000)
    redis_client.hsetnx.assert_not_awaited()
    redis_client.zadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_duplicate_key_rejected(redis_client):
    redis_client.eval.return_value = 0
    queue = RedisWorkQueue(redis_client, name="q")

    assert await queue.enqueue("run-1:A:0", job()) is False


@pytest.mark.asyncio
async def test_redis_claim_moves_job_to_processing(redis_client):
    """Claiming scores the job by its visibility deadline and ack releases both keys"""
    item = job()
    redis_client.eval.return_value = [b"run-1:A:0", orjson.dumps(item.to_dict())]
    queue = RedisWorkQueue(redis_client, name="q", visibility_timeout=30)

    taken = await queue.dequeue(timeout=0)

    assert taken == item
    script, keys, args = _script_call(redis_client)
    assert keys == ["q:jobs", "q:delayed", "q:processing"]
    now_ms, visible_until_ms = args
    assert visible_until_ms - now_ms == 30000

    await queue.ack(taken)

    redis_client.hdel.assert_awaited_once_with("q:jobs", "run-1:A:0")
    redis_client.zrem.assert_awaited_once_with("q:processing", "run-1:A:0")


@pytest.mark.asyncio
async def test_redis_claim_requeues_expired_processing_entries(redis_client):
    """Jobs whose worker died are moved back to the delayed set before the next claim"""
    redis_client.eval.return_value = None
    queue = RedisWorkQueue(redis_client, name="q")

    assert await queue.dequeue(timeout=0) is None

    script, keys, args = _script_call(redis_client)
    requeue = script.index("ZRANGEBYSCORE', KEYS[3], 0, ARGV[1]")
    claim = script.index("ZRANGEBYSCORE', KEYS[2], 0, ARGV[1]")
    assert requeue < claim
    assert "redis.call('ZADD', KEYS[2], ARGV[1], key)" in script
    assert keys[2] == "q:processing"


@pytest.mark.asyncio
async def test_redis_claim_without_payload_returns_none(redis_client):
    redis_client.eval.return_value = [b"run-1:A:0"]
    queue = RedisWorkQueue(redis_client, name="q", poll_interval=0.01)

    assert await queue.dequeue(timeout=0) is None
    assert queue._inflight == {}


@pytest.mark.asyncio
async def test_redis_fail_keeps_trimmed_history(redis_client):
    queue = RedisWorkQueue(redis_client, name="q", keep_failed_jobs=5)

    await queue.fail(job(), "database unavailable")

    redis_client.hdel.assert_awaited_once_with("q:jobs", "run-1:A:0")
    redis_client.zrem.assert_awaited_once_with("q:processing", "run-1:A:0")
    entry = orjson.loads(redis_client.lpush.await_args.args[1])
    assert entry["error"] == "database unavailable"
    redis_client.ltrim.assert_awaited_once_with("q:failed", 0, 4)


def test_factory_passes_visibility_timeout():
    settings = Settings(queue_backend="redis", redis_url="redis://localhost:6379/0",
                        queue_visibility_timeout=42)

    queue = create_work_queue(settings, client=AsyncMock())

    assert isinstance(queue, RedisWorkQueue)
    assert queue.visibility_timeout == 42
