"""
Integration tests for the execution engine: real SQLite database, in-memory
queue, jobs processed inline by the step worker.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import orjson
import pytest

from conftest import node, edge
from models.database import utcnow
from models.workflow import NodeType
from services.engine import RecoverySweeper, StepWorker
from services.engine.exceptions import NotFoundError, PermanentExecutionError, ValidationError


LINEAR = {
    "nodes": [node("A", shift=3), node("B", operation="uppercase")],
    "edges": [edge("A", "B")],
}


def _branching(true_target_op: str = "uppercase"):
    return {
        "nodes": [
            node("start", operation="lowercase"),
            node("check", "IF", expr='steps.start.outputs.text == "yes"'),
            node("T", operation=true_target_op),
            node("F", operation="reverse"),
            node("D", shift=1),
        ],
        "edges": [
            edge("start", "check"),
            edge("check", "T", "true"),
            edge("check", "F", "false"),
            edge("T", "D"),
            edge("F", "D"),
        ],
    }


async def _statuses(engine, run_id):
    return {step["node_id"]: step["status"] for step in await engine.get_steps(run_id)}


# ============================================================================
# Happy paths
# ============================================================================

@pytest.mark.asyncio
async def test_linear_run_succeeds(engine, start_run, drain):
    """A -> B: output of A is the input of B"""
    run_id = await start_run(LINEAR, {"text": "abc"})

    await drain()

    run = await engine.get_run(run_id)
    step_b = await engine.get_step(run_id, "B")
    assert run.status == "SUCCESS"
    assert run.started_at is not None
    assert run.completed_at is not None
    assert step_b.input["text"] == "def"
    assert step_b.output["text"] == "DEF"
    assert await _statuses(engine, run_id) == {"A": "SUCCESS", "B": "SUCCESS"}


@pytest.mark.asyncio
async def test_one_step_row_per_node_at_start(engine, start_run):
    run_id = await start_run(LINEAR, {"text": "abc"})

    steps = await engine.get_steps(run_id)

    assert [s["node_id"] for s in steps] == ["A", "B"]
    assert all(s["status"] == "PENDING" for s in steps)
    assert steps[0]["execution_key"] == f"{run_id}:A"


@pytest.mark.asyncio
async def test_fan_in_merges_parents_in_id_order(engine, start_run, drain):
    """C waits for A and B; on key collisions the later parent id wins"""
    definition = {
        "nodes": [
            node("A", operation="uppercase"),
            node("B", "DATA_AGGREGATOR", operation="pick", fields=["extra"]),
            node("C", operation="reverse"),
        ],
        "edges": [edge("A", "C"), edge("B", "C")],
    }
    run_id = await start_run(definition, {"text": "hello", "extra": 1})

    await drain()

    step_c = await engine.get_step(run_id, "C")
    assert step_c.input["operation"] == "pick"
    assert step_c.input["data"] == {"extra": 1}
    assert step_c.output["text"] == "OLLEH"

    started = [log for log in await engine.get_logs(run_id, node_id="C") if log.message == "step.started"]
    assert len(started) == 1
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
@pytest.mark.parametrize("text,taken,skipped,final", [
    ("YES", "T", "F", "ZFT"),
    ("NO", "F", "T", "po"),
])
async def test_if_branch_skips_untaken_side(engine, start_run, drain, text, taken, skipped, final):
    run_id = await start_run(_branching(), {"text": text})

    await drain()

    statuses = await _statuses(engine, run_id)
    assert statuses[taken] == "SUCCESS"
    assert statuses[skipped] == "SKIPPED"
    assert statuses["D"] == "SUCCESS"

    check = await engine.get_step(run_id, "check")
    assert check.output["condition"]["selected"] == taken
    assert check.output["condition"]["skipped"] == [skipped]

    step_d = await engine.get_step(run_id, "D")
    assert step_d.output["text"] == final
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_versions_are_pinned(engine, database):
    first = await engine.create_workflow_version("wf", LINEAR)
    second = await engine.create_workflow_version("wf", {"nodes": [node("only")], "edges": []})

    run_id = await engine.start_execution("wf", {"text": "x"})
    run = await engine.get_run(run_id)

    assert (first.version, second.version) == (1, 2)
    assert run.workflow_version_id == second.id
    assert run.run_metadata["version"] == 2
    assert (await database.get_workflow_version(first.id)).is_pinned is False


@pytest.mark.asyncio
async def test_invalid_definition_is_not_stored(engine, database):
    cyclic = {"nodes": [node("A"), node("B")], "edges": [edge("A", "B"), edge("B", "A")]}

    with pytest.raises(ValidationError, match="Cycle detected"):
        await engine.create_workflow_version("wf", cyclic)

    assert await database.get_workflow_versions("wf") == []


@pytest.mark.asyncio
async def test_unknown_workflow_and_run(engine):
    with pytest.raises(NotFoundError):
        await engine.start_execution("missing", {})
    with pytest.raises(NotFoundError):
        await engine.execute_node("missing-run", "A", {})
    with pytest.raises(NotFoundError):
        await engine.get_run("missing-run")


# ============================================================================
# Failures and retries
# ============================================================================

@pytest.mark.asyncio
async def test_permanent_failure_fails_run(engine, plugins, start_run, drain):
    calls = []

    async def broken(context):
        calls.append(context.node_id)
        raise PermanentExecutionError("bad input")

    plugins.register(NodeType.TEXT_TRANSFORM, broken)
    engine.dlq = AsyncMock()
    run_id = await start_run(LINEAR, {"text": "abc"})

    await drain()

    step_a = await engine.get_step(run_id, "A")
    assert calls == ["A"]
    assert step_a.status == "FAILED"
    assert step_a.retry_count == 0
    assert step_a.error["message"] == "bad input"
    assert "stack" in step_a.error
    assert (await engine.get_step(run_id, "B")).status == "PENDING"
    assert (await engine.get_run(run_id)).status == "FAILED"
    engine.dlq.add_failed_step.assert_awaited_once()


@pytest.mark.asyncio
async def test_transient_failure_is_retried(engine, plugins, start_run, drain):
    attempts = {"count": 0}

    async def flaky(context):
        attempts["count"] += 1
        if attempts["count"] < 3:
            return {"success": False, "error": "connection reset by peer", "retryable": True}
        return {"success": True, "output": {"text": "ok"}}

    plugins.register(NodeType.TEXT_TRANSFORM, flaky)
    definition = {
        "nodes": [{"id": "A", "type": "TEXT_TRANSFORM",
                   "retryConfig": {"maxAttempts": 3, "backoffMs": 1, "backoffMultiplier": 1}}],
        "edges": [],
    }
    run_id = await start_run(definition)

    await drain()

    step_a = await engine.get_step(run_id, "A")
    retries = [log for log in await engine.get_logs(run_id, level="WARN") if log.message == "step.retrying"]
    assert attempts["count"] == 3
    assert step_a.status == "SUCCESS"
    assert step_a.retry_count == 2
    assert step_a.error is None
    assert len(retries) == 2
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_retries_exhausted(engine, plugins, start_run, drain):
    attempts = {"count": 0}

    async def always_down(context):
        attempts["count"] += 1
        return {"success": False, "error": "HTTP 503: Service Unavailable", "status_code": 503}

    plugins.register(NodeType.TEXT_TRANSFORM, always_down)
    engine.dlq = AsyncMock()
    definition = {
        "nodes": [{"id": "A", "type": "TEXT_TRANSFORM", "retryConfig": {"maxAttempts": 2, "backoffMs": 1}}],
        "edges": [],
    }
    run_id = await start_run(definition)

    await drain()

    step_a = await engine.get_step(run_id, "A")
    assert attempts["count"] == 2
    assert step_a.status == "FAILED"
    assert step_a.retry_count == 1
    assert step_a.error["statusCode"] == 503
    assert (await engine.get_run(run_id)).status == "FAILED"
    run_arg, step_arg, message = engine.dlq.add_failed_step.await_args.args
    assert run_arg.id == run_id
    assert step_arg.node_id == "A"
    assert message == "HTTP 503: Service Unavailable"


@pytest.mark.asyncio
async def test_manual_retry_of_failed_step(engine, plugins, start_run, drain):
    state = {"fail": True}

    async def sometimes(context):
        if state["fail"]:
            raise PermanentExecutionError("bad config")
        return {"success": True, "output": {"text": "fixed"}}

    plugins.register(NodeType.TEXT_TRANSFORM, sometimes)
    run_id = await start_run(LINEAR, {"text": "abc"})
    await drain()
    assert (await engine.get_run(run_id)).status == "FAILED"

    state["fail"] = False
    await engine.retry_step(run_id, "A")

    step_a = await engine.get_step(run_id, "A")
    assert step_a.status == "PENDING"
    assert step_a.retry_count == 1
    assert step_a.error is None
    assert (await engine.get_run(run_id)).status == "RUNNING"

    await drain()

    assert await _statuses(engine, run_id) == {"A": "SUCCESS", "B": "SUCCESS"}
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_manual_retry_requires_failed_step(engine, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})
    await drain()

    with pytest.raises(ValidationError):
        await engine.retry_step(run_id, "A")


# ============================================================================
# Control operations
# ============================================================================

@pytest.mark.asyncio
async def test_pause_blocks_scheduling_until_resume(engine, worker, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})
    assert await worker.run_once(timeout=0.3)

    await engine.pause_execution(run_id)
    await drain()

    assert (await engine.get_run(run_id)).status == "PAUSED"
    assert await _statuses(engine, run_id) == {"A": "SUCCESS", "B": "PENDING"}

    await engine.resume_execution(run_id)
    await drain()

    assert (await engine.get_run(run_id)).status == "SUCCESS"
    assert (await engine.get_step(run_id, "B")).output["text"] == "DEF"


@pytest.mark.asyncio
async def test_pause_and_resume_state_checks(engine, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})

    with pytest.raises(ValidationError):
        await engine.resume_execution(run_id)

    await drain()

    with pytest.raises(ValidationError):
        await engine.pause_execution(run_id)


@pytest.mark.asyncio
async def test_cancel_skips_everything(engine, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})

    await engine.cancel_execution(run_id)
    await drain()

    run = await engine.get_run(run_id)
    assert run.status == "CANCELLED"
    assert run.completed_at is not None
    assert await _statuses(engine, run_id) == {"A": "SKIPPED", "B": "SKIPPED"}

    with pytest.raises(ValidationError):
        await engine.cancel_execution(run_id)


@pytest.mark.asyncio
async def test_result_after_cancel_is_discarded(engine, plugins, start_run, drain):
    async def cancel_midway(context):
        await engine.cancel_execution(context.run_id)
        return {"success": True, "output": {"text": "late"}}

    plugins.register(NodeType.TEXT_TRANSFORM, cancel_midway)
    run_id = await start_run(LINEAR, {"text": "abc"})

    await drain()

    step_a = await engine.get_step(run_id, "A")
    assert step_a.status == "SKIPPED"
    assert step_a.output is None
    assert (await engine.get_run(run_id)).status == "CANCELLED"


# ============================================================================
# Idempotency, deferred steps, recovery
# ============================================================================

@pytest.mark.asyncio
async def test_execute_node_twice_reuses_result(engine, plugins, start_run, drain):
    calls = []

    async def counting(context):
        calls.append(context.node_id)
        return {"success": True, "output": {"text": context.input.get("text", "") + "!"}}

    plugins.register(NodeType.TEXT_TRANSFORM, counting)
    run_id = await start_run({"nodes": [node("A"), node("B")], "edges": [edge("A", "B")]}, {"text": "hi"})

    first = await engine.execute_node(run_id, "A", {"text": "hi"})
    second = await engine.execute_node(run_id, "A", {"text": "hi"})

    assert calls == ["A"]
    assert first.reused is False
    assert second.reused is True
    assert first.checksum == second.checksum
    assert first.output == second.output == {"text": "hi!"}

    await drain()

    assert calls == ["A", "B"]
    assert (await engine.get_step(run_id, "B")).output == {"text": "hi!!"}
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_long_delay_is_deferred(engine, worker, start_run, drain):
    definition = {
        "nodes": [{"id": "wait", "type": "DELAY", "config": {"ms": 100}},
                  node("after", operation="uppercase", text="done")],
        "edges": [edge("wait", "after")],
    }
    run_id = await start_run(definition)

    assert await worker.run_once(timeout=0.3)
    parked = await engine.get_step(run_id, "wait")
    assert parked.status == "RUNNING"

    await drain()

    step_wait = await engine.get_step(run_id, "wait")
    assert step_wait.status == "SUCCESS"
    assert step_wait.output["blocking"] is False
    assert step_wait.output["requestedMs"] == 100
    assert "completedAt" in step_wait.output
    assert (await engine.get_step(run_id, "after")).output["text"] == "DONE"
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_short_delay_runs_inline(engine, start_run, drain):
    run_id = await start_run({"nodes": [{"id": "wait", "type": "DELAY", "config": {"ms": 5}}], "edges": []})

    await drain()

    step_wait = await engine.get_step(run_id, "wait")
    assert step_wait.output["blocking"] is True
    assert (await engine.get_run(run_id)).status == "SUCCESS"


@pytest.mark.asyncio
async def test_sweeper_recovers_stale_step(engine, database, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})
    await database.transition_step(
        run_id, "A", ["PENDING"], "RUNNING",
        input={"text": "abc"},
        heartbeat_at=utcnow() - timedelta(hours=1),
    )
    sweeper = RecoverySweeper(engine, database, heartbeat_timeout=60, sweep_interval=1)

    assert await sweeper.sweep_once() == 1

    step_a = await engine.get_step(run_id, "A")
    assert step_a.status == "RETRYING"
    assert step_a.retry_count == 1

    await drain()

    assert (await engine.get_step(run_id, "B")).output["text"] == "DEF"
    assert (await engine.get_run(run_id)).status == "SUCCESS"
    assert await sweeper.sweep_once() == 0


@pytest.mark.asyncio
async def test_long_running_step_keeps_heartbeat(engine, database, plugins, queue, start_run):
    """A step still executing past the heartbeat timeout is not recovered or re-run"""
    calls = []

    async def slow(context):
        calls.append(context.retry_count)
        await asyncio.sleep(1.5)
        return {"success": True, "output": {"text": "done"}}

    plugins.register(NodeType.TEXT_TRANSFORM, slow)
    engine.heartbeat_interval = 0.1
    run_id = await start_run({"nodes": [node("A")], "edges": []})
    worker = StepWorker(engine, queue, concurrency=1, poll_interval=0.05)
    sweeper = RecoverySweeper(engine, database, heartbeat_timeout=1, sweep_interval=1)

    await worker.start()
    try:
        await asyncio.sleep(1.2)
        running = await engine.get_step(run_id, "A")
        assert running.status == "RUNNING"
        assert running.heartbeat_at > running.started_at
        assert await sweeper.sweep_once() == 0

        for _ in range(60):
            run = await engine.get_run(run_id)
            if run.status == "SUCCESS":
                break
            await asyncio.sleep(0.05)
    finally:
        await worker.stop()

    assert run.status == "SUCCESS"
    assert calls == [0]
    assert (await engine.get_step(run_id, "A")).retry_count == 0


# ============================================================================
# Observability
# ============================================================================

@pytest.mark.asyncio
async def test_status_events_published(engine, events, start_run, drain):
    received = []

    async def collect(topic, payload):
        received.append((topic, payload))

    await events.subscribe("*", collect)
    run_id = await start_run(LINEAR, {"text": "abc"})
    await drain()

    run_statuses = [p["status"] for topic, p in received if topic == "run.status"]
    step_b = [p["status"] for topic, p in received if topic == "step.status" and p["nodeId"] == "B"]
    assert run_statuses == ["RUNNING", "SUCCESS"]
    assert step_b == ["RUNNING", "SUCCESS"]
    assert all(p["runId"] == run_id for _, p in received)


@pytest.mark.asyncio
async def test_stream_logs_ndjson(engine, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})
    await drain()

    lines = [line async for line in engine.stream_logs(run_id)]
    records = [orjson.loads(line) for line in lines]

    assert all(line.endswith("\n") for line in lines)
    assert set(records[0]) == {"ts", "level", "event", "runId", "nodeId", "stepId", "payload"}
    assert records[0]["event"] == "step.started"
    assert records[0]["nodeId"] == "A"
    assert {r["event"] for r in records} >= {"step.started", "step.succeeded"}


@pytest.mark.asyncio
async def test_get_steps_with_logs(engine, start_run, drain):
    run_id = await start_run(LINEAR, {"text": "abc"})
    await drain()

    steps = await engine.get_steps(run_id, include_logs=True)

    assert all(step["logs"] for step in steps)
    assert steps[0]["logs"][0]["stepId"] == steps[0]["id"]


# ============================================================================
# Worker
# ============================================================================

@pytest.mark.asyncio
async def test_background_worker_completes_run(engine, queue, start_run):
    worker = StepWorker(engine, queue, concurrency=2, poll_interval=0.05)
    run_id = await start_run(_branching(), {"text": "yes"})

    await worker.start()
    try:
        for _ in range(100):
            run = await engine.get_run(run_id)
            if run.status == "SUCCESS":
                break
            await asyncio.sleep(0.05)
    finally:
        await worker.stop()

    assert run.status == "SUCCESS"
