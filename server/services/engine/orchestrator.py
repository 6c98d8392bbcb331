"""Execution engine - run/step state machine over a work queue.

Implements:
- Run creation from the pinned workflow version (one step row per node)
- Queue-driven step execution with checksum based result reuse
- Fan-in joins, IF branching with skip propagation
- Retry with exponential backoff, dead letter entries on permanent failure
- Pause / resume / cancel and manual retry of failed steps

Every status change is a compare-and-set on the database row, so duplicate
deliveries, late results and concurrent control calls cannot move a step or
run backwards. Results that arrive after a cancel are discarded because the
step is no longer RUNNING.
"""

import asyncio
import traceback
import uuid
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Union, TYPE_CHECKING

import orjson

from core.config import Settings
from core.logging import get_logger
from models.database import ExecutionLog, ExecutionRun, StepExecution, WorkflowVersion, utcnow
from models.workflow import NodeType
from services.engine import branching, dag as dag_module, retry
from services.engine.dlq import DLQHandlerProtocol, NullDLQHandler
from services.engine.events import EventBus, RUN_STATUS, STEP_STATUS, STEP_LOG
from services.engine.exceptions import NotFoundError, TransientExecutionError, ValidationError
from services.engine.idempotency import IdempotencyManager, checksum
from services.engine.models import (
    TERMINAL_STEP_STATUSES,
    DAGRuntime,
    JobKind,
    LogLevel,
    NodeRuntime,
    PluginResult,
    RetryPolicy,
    RunStatus,
    StepContext,
    StepJob,
    StepOutcome,
    StepStatus,
)

if TYPE_CHECKING:
    from core.database import Database
    from services.plugins.executor import PluginExecutor
    from services.queue.base import WorkQueue

logger = get_logger(__name__)

FailureLike = Union[BaseException, PluginResult, Dict[str, Any], str]

# Steps that may still be scheduled
_SCHEDULABLE = (StepStatus.PENDING.value, StepStatus.RETRYING.value)
_ACTIVE_STEP_STATUSES = (StepStatus.PENDING.value, StepStatus.RUNNING.value, StepStatus.RETRYING.value)
_ACTIVE_RUN_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value, RunStatus.PAUSED.value)
_TERMINAL_STEP_VALUES = frozenset(s.value for s in TERMINAL_STEP_STATUSES)


class Engine:
    """Drives workflow runs step by step.

    Workers call execute_node for each dequeued job; everything else in the
    public API is a control or read operation that can be called from any
    process sharing the same database and queue.
    """

    def __init__(
        self,
        database: "Database",
        queue: "WorkQueue",
        plugins: "PluginExecutor",
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        dlq: Optional[DLQHandlerProtocol] = None,
    ):
        """Initialize the engine.

        Args:
            database: Persistence for versions, runs, steps and logs
            queue: Work queue step jobs are scheduled on
            plugins: Executor for non-control node types
            events: Status hook; a private bus is used when omitted
            settings: Engine settings
            dlq: Dead letter handler (Null Object when disabled)
        """
        self.database = database
        self.queue = queue
        self.plugins = plugins
        self.events = events or EventBus()
        self.settings = settings or Settings()
        self.dlq = dlq or NullDLQHandler()
        self.idempotency = IdempotencyManager(database)
        # RUNNING steps are touched this often while their plugin executes
        self.heartbeat_interval = self.settings.heartbeat_timeout / 3
        self.system_retry = RetryPolicy(
            max_attempts=self.settings.default_max_attempts,
            backoff_ms=self.settings.default_backoff_ms,
            backoff_multiplier=self.settings.default_backoff_multiplier,
        )

        # Compiled DAGs keyed by workflow version id (versions are immutable)
        self._dags: Dict[str, DAGRuntime] = {}

    # =========================================================================
    # WORKFLOW VERSIONS
    # =========================================================================

    def compile(self, definition: Any) -> DAGRuntime:
        return dag_module.compile(definition, system_retry=self.system_retry,
                                  delay_max_ms=self.settings.delay_max_ms)

    async def create_workflow_version(self, workflow_id: str, definition: Any,
                                      pin: bool = True) -> WorkflowVersion:
        """Validate a DAG definition and store it as the next workflow version.

        Raises:
            ValidationError: If the definition is not a valid DAG
        """
        parsed = dag_module.validate(definition, delay_max_ms=self.settings.delay_max_ms)
        version = await self.database.create_workflow_version(
            version_id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            dag_definition=parsed.to_storage(),
            pin=pin,
        )
        logger.info("Workflow version created", workflow_id=workflow_id,
                    version=version.version, pinned=version.is_pinned)
        return version

    async def _dag_for_run(self, run: ExecutionRun) -> DAGRuntime:
        runtime = self._dags.get(run.workflow_version_id)
        if runtime is None:
            version = await self.database.get_workflow_version(run.workflow_version_id)
            if version is None:
                raise NotFoundError("workflow version", run.workflow_version_id)
            runtime = self.compile(version.dag_definition)
            self._dags[version.id] = runtime
        return runtime

    # =========================================================================
    # RUN LIFECYCLE
    # =========================================================================

    async def start_execution(self, workflow_id: str, trigger_input: Optional[Dict[str, Any]] = None,
                              user_id: Optional[str] = None) -> str:
        """Create a run of the pinned workflow version and enqueue its roots.

        Returns:
            The new run id

        Raises:
            NotFoundError: If the workflow has no pinned version
            ValidationError: If the stored definition no longer compiles
        """
        version = await self.database.get_pinned_version(workflow_id)
        if version is None:
            raise NotFoundError("workflow", workflow_id)

        runtime = self.compile(version.dag_definition)
        self._dags[version.id] = runtime

        trigger_input = dict(trigger_input or {})
        run_id = str(uuid.uuid4())
        run = ExecutionRun(
            id=run_id,
            workflow_version_id=version.id,
            workflow_id=workflow_id,
            status=RunStatus.PENDING.value,
            input=trigger_input,
            run_metadata={"userId": user_id, "version": version.version},
        )
        steps = [
            StepExecution(
                id=str(uuid.uuid4()),
                run_id=run_id,
                node_id=node_id,
                node_type=runtime.nodes[node_id].type.value,
                status=StepStatus.PENDING.value,
                execution_key=f"{run_id}:{node_id}",
            )
            for node_id in runtime.order
        ]
        await self.database.create_run(run, steps)
        await self._set_run_status(run_id, [RunStatus.PENDING], RunStatus.RUNNING, started_at=utcnow())

        roots = dag_module.root_nodes(runtime)
        for node_id in roots:
            await self._enqueue(StepJob(run_id=run_id, node_id=node_id, input=dict(trigger_input)))

        logger.info("Run started", run_id=run_id, workflow_id=workflow_id,
                    version=version.version, nodes=len(steps), roots=roots)
        return run_id

    async def pause_execution(self, run_id: str) -> None:
        """RUNNING -> PAUSED. In-flight steps finish; nothing new is scheduled."""
        if not await self._set_run_status(run_id, [RunStatus.RUNNING], RunStatus.PAUSED):
            run = await self._require_run(run_id)
            raise ValidationError(f"Cannot pause run {run_id} in status {run.status}")
        logger.info("Run paused", run_id=run_id)

    async def resume_execution(self, run_id: str) -> None:
        """PAUSED -> RUNNING and re-enqueue every step that is ready."""
        if not await self._set_run_status(run_id, [RunStatus.PAUSED], RunStatus.RUNNING):
            run = await self._require_run(run_id)
            raise ValidationError(f"Cannot resume run {run_id} in status {run.status}")
        logger.info("Run resumed", run_id=run_id)
        await self._reschedule(run_id)

    async def cancel_execution(self, run_id: str) -> None:
        """Cancel a non-terminal run; all its unfinished steps become SKIPPED."""
        cancelled = await self.database.transition_run_cascade(
            run_id,
            _ACTIVE_RUN_STATUSES,
            RunStatus.CANCELLED.value,
            step_from=_ACTIVE_STEP_STATUSES,
            step_to=StepStatus.SKIPPED.value,
            completed_at=utcnow(),
        )
        if not cancelled:
            run = await self._require_run(run_id)
            raise ValidationError(f"Cannot cancel run {run_id} in status {run.status}")

        await self.events.publish(RUN_STATUS, {"runId": run_id, "status": RunStatus.CANCELLED.value})
        logger.info("Run cancelled", run_id=run_id)

    async def retry_step(self, run_id: str, node_id: str) -> None:
        """Manually retry a FAILED step of a FAILED or PAUSED run."""
        run = await self._require_run(run_id)
        step = await self._require_step(run_id, node_id)

        if step.status != StepStatus.FAILED.value:
            raise ValidationError(f"Step {node_id} is {step.status}; only FAILED steps can be retried")
        if run.status not in (RunStatus.FAILED.value, RunStatus.PAUSED.value):
            raise ValidationError(f"Run {run_id} is {run.status}; only FAILED or PAUSED runs allow step retry")

        reset = await self._set_step_status(
            run_id, node_id, [StepStatus.FAILED], StepStatus.PENDING,
            retry_count=step.retry_count + 1,
            error=None,
            output=None,
            completed_at=None,
        )
        if not reset:
            raise ValidationError(f"Step {node_id} changed state while being retried")

        await self._set_run_status(run_id, [RunStatus.FAILED, RunStatus.PAUSED], RunStatus.RUNNING,
                                   completed_at=None)
        await self._log(step, LogLevel.INFO, "step.manual_retry", retryCount=step.retry_count + 1)
        logger.info("Step retry requested", run_id=run_id, node_id=node_id,
                    retry_count=step.retry_count + 1)
        await self._reschedule(run_id)

    # =========================================================================
    # STEP EXECUTION
    # =========================================================================

    async def execute_node(self, run_id: str, node_id: str, input: Optional[Dict[str, Any]] = None,
                           retry_count: int = 0) -> Optional[StepOutcome]:
        """Execute one step attempt.

        Returns:
            What happened to the step, or None when the job was a no-op
            (run not RUNNING, step already terminal or claimed elsewhere)

        Raises:
            NotFoundError: If the run or node does not exist
        """
        input = dict(input or {})
        run = await self._require_run(run_id)
        runtime = await self._dag_for_run(run)
        node = runtime.node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)

        if run.status != RunStatus.RUNNING.value:
            logger.debug("Run not running, job ignored", run_id=run_id, node_id=node_id, status=run.status)
            return None

        step = await self._require_step(run_id, node_id)
        if step.status in (StepStatus.SKIPPED.value, StepStatus.FAILED.value):
            return None
        if retry_count < step.retry_count:
            logger.debug("Stale job ignored", run_id=run_id, node_id=node_id,
                         job_retry_count=retry_count, retry_count=step.retry_count)
            return None

        step_checksum = checksum(run_id, node_id, input, node.plugin_version)
        prior = await self.idempotency.check(run_id, node_id, step_checksum)
        if prior.reuse:
            logger.info("Step result reused", run_id=run_id, node_id=node_id)
            await self.handle_node_success(run_id, node_id, prior.output)
            return StepOutcome(StepStatus.SUCCESS, checksum=step_checksum, output=prior.output, reused=True)

        claimed = await self._set_step_status(
            run_id, node_id, _SCHEDULABLE, StepStatus.RUNNING,
            input=input,
            checksum=step_checksum,
            started_at=utcnow(),
            heartbeat_at=utcnow(),
        )
        if not claimed:
            logger.debug("Step not claimable", run_id=run_id, node_id=node_id)
            return None

        step = await self._require_step(run_id, node_id)
        await self._log(step, LogLevel.INFO, "step.started", attempt=step.retry_count + 1,
                        nodeType=node.type.value)

        try:
            if node.type == NodeType.IF:
                return await self._evaluate_branch(run, runtime, node, step, input, step_checksum)

            heartbeat = asyncio.create_task(self._heartbeat(step))
            try:
                result = await self.plugins.execute(await self._step_context(run, node, step, input))
            finally:
                await self._stop_heartbeat(heartbeat)

            if not result.success:
                return await self.handle_node_failure(run_id, node_id, result)

            if result.deferred_ms:
                return await self._defer(step, result)

            await self._log(step, LogLevel.INFO, "step.plugin_completed", durationMs=result.duration_ms)
            return await self._apply_success(node, step, result.output or {}, step_checksum)

        except NotFoundError:
            raise
        except Exception as e:
            logger.error("Step execution error", run_id=run_id, node_id=node_id, error=str(e))
            try:
                return await self.handle_node_failure(run_id, node_id, e)
            except NotFoundError:
                raise
            except Exception as inner:
                # Step stays RUNNING; the recovery sweeper picks it up
                logger.error("Failed to record step failure", run_id=run_id, node_id=node_id,
                             error=str(inner))
                return None

    async def _heartbeat(self, step: StepExecution) -> None:
        """Keep the claimed attempt fresh so the recovery sweeper leaves it alone."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                alive = await self.database.touch_step(step.run_id, step.node_id, utcnow(),
                                                       retry_count=step.retry_count)
            except Exception as e:
                logger.warning("Heartbeat failed", run_id=step.run_id, node_id=step.node_id,
                               error=str(e))
                continue
            if not alive:
                # Attempt is no longer RUNNING
                return

    async def _stop_heartbeat(self, heartbeat: asyncio.Task) -> None:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass

    async def _step_context(self, run: ExecutionRun, node: NodeRuntime, step: StepExecution,
                            input: Dict[str, Any]) -> StepContext:
        return StepContext(
            run_id=run.id,
            node_id=node.id,
            node_type=node.type,
            config=node.config,
            input=input,
            steps=await self._steps_context(run.id),
            inputs=dict(run.input or {}),
            retry_count=step.retry_count,
        )

    async def _steps_context(self, run_id: str) -> Dict[str, Dict[str, Any]]:
        """{node_id: {"outputs": ...}} for every successful step of the run."""
        return {
            s.node_id: {"outputs": s.output or {}, "status": s.status}
            for s in await self.database.get_steps(run_id)
            if s.status == StepStatus.SUCCESS.value
        }

    async def _evaluate_branch(self, run: ExecutionRun, runtime: DAGRuntime, node: NodeRuntime,
                               step: StepExecution, input: Dict[str, Any],
                               step_checksum: str) -> Optional[StepOutcome]:
        context = {"steps": await self._steps_context(run.id), "inputs": dict(run.input or {})}
        result = node.condition.evaluate(context)
        decision = branching.determine_branch(runtime, node.id, result)

        await self._log(step, LogLevel.INFO, "step.branch", expr=node.condition.source,
                        result=result, selected=decision.selected, skipped=decision.skipped)

        # Data flows through the IF node unchanged
        output = {**input, "condition": decision.to_output()}
        return await self._apply_success(node, step, output, step_checksum, skipped=decision.skipped)

    async def _defer(self, step: StepExecution, result: PluginResult) -> StepOutcome:
        """Keep the step RUNNING and schedule its completion as a timer job."""
        ready_at = utcnow() + timedelta(milliseconds=result.deferred_ms)
        await self.database.touch_step(step.run_id, step.node_id, ready_at)
        await self._enqueue(
            StepJob(
                run_id=step.run_id,
                node_id=step.node_id,
                input=result.output or {},
                retry_count=step.retry_count,
                kind=JobKind.COMPLETE_DEFERRED,
            ),
            delay_ms=result.deferred_ms,
        )
        await self._log(step, LogLevel.INFO, "step.deferred", delayMs=result.deferred_ms)
        return StepOutcome(StepStatus.RUNNING, checksum=step.checksum, output=result.output, deferred=True)

    async def complete_deferred(self, run_id: str, node_id: str,
                                output: Optional[Dict[str, Any]] = None) -> Optional[StepOutcome]:
        """Finish a deferred step once its timer job fires."""
        run = await self._require_run(run_id)
        runtime = await self._dag_for_run(run)
        node = runtime.node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)

        step = await self._require_step(run_id, node_id)
        if step.status != StepStatus.RUNNING.value:
            logger.debug("Deferred completion ignored", run_id=run_id, node_id=node_id, status=step.status)
            return None

        output = {**(output or {}), "completedAt": utcnow().isoformat()}
        return await self._apply_success(node, step, output, step.checksum)

    async def _apply_success(self, node: NodeRuntime, step: StepExecution, output: Dict[str, Any],
                             step_checksum: Optional[str], skipped: Sequence[str] = ()) -> StepOutcome:
        """Persist a successful result, mark skipped branches, schedule children."""
        run_id = step.run_id
        now = utcnow()
        stored = await self._set_step_status(
            run_id, node.id, [StepStatus.RUNNING], StepStatus.SUCCESS,
            output=output,
            checksum=step_checksum,
            error=None,
            completed_at=now,
            heartbeat_at=None,
        )
        if not stored:
            current = await self.database.get_step(run_id, node.id)
            status = StepStatus(current.status) if current else StepStatus.SKIPPED
            logger.info("Step result discarded", run_id=run_id, node_id=node.id, status=status.value)
            return StepOutcome(status, checksum=step_checksum)

        if skipped:
            moved = await self.database.transition_steps(
                run_id, list(skipped), [StepStatus.PENDING.value], StepStatus.SKIPPED.value, completed_at=now
            )
            for node_id in skipped:
                await self.events.publish(STEP_STATUS, {"runId": run_id, "nodeId": node_id,
                                                        "status": StepStatus.SKIPPED.value})
            logger.debug("Branch nodes skipped", run_id=run_id, node_id=node.id, skipped=moved)

        await self._log(step, LogLevel.INFO, "step.succeeded")
        await self.handle_node_success(run_id, node.id, output)
        return StepOutcome(StepStatus.SUCCESS, checksum=step_checksum, output=output)

    async def handle_node_success(self, run_id: str, node_id: str,
                                  output: Optional[Dict[str, Any]] = None) -> None:
        """Enqueue children whose fan-in join is satisfied, then check completion."""
        run = await self._require_run(run_id)
        runtime = await self._dag_for_run(run)
        steps = {s.node_id: s for s in await self.database.get_steps(run_id)}
        statuses = {node: s.status for node, s in steps.items()}

        if run.status == RunStatus.RUNNING.value:
            # Children of skipped nodes may be unblocked by this completion too
            candidates = set(dag_module.child_nodes(runtime, node_id))
            for other, status in statuses.items():
                if status == StepStatus.SKIPPED.value:
                    candidates.update(dag_module.child_nodes(runtime, other))

            for child in sorted(candidates):
                child_step = steps.get(child)
                if child_step is None or child_step.status != StepStatus.PENDING.value:
                    continue
                if not branching.parents_complete(runtime, child, statuses):
                    continue
                await self._enqueue(StepJob(
                    run_id=run_id,
                    node_id=child,
                    input=self._child_input(runtime, child, steps, run),
                    retry_count=child_step.retry_count,
                ))
        else:
            logger.debug("Run not running, children not scheduled", run_id=run_id,
                         node_id=node_id, status=run.status)

        await self._check_completion(run_id, steps.values())

    async def handle_node_failure(self, run_id: str, node_id: str, error: FailureLike) -> StepOutcome:
        """Retry a failed attempt with backoff, or fail the step and the run."""
        run = await self._require_run(run_id)
        runtime = await self._dag_for_run(run)
        node = runtime.node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)
        step = await self._require_step(run_id, node_id)

        classified = error.to_exception() if isinstance(error, PluginResult) else error
        info = self._error_info(classified)
        attempt = step.retry_count + 1

        if retry.should_retry(classified, attempt, node.retry.max_attempts):
            delay_ms = retry.calculate_backoff(attempt, node.retry)
            next_count = step.retry_count + 1
            moved = await self._set_step_status(
                run_id, node_id, [StepStatus.RUNNING], StepStatus.RETRYING,
                retry_count=next_count,
                error=info,
                heartbeat_at=None,
            )
            if not moved:
                return await self._current_outcome(run_id, node_id, info)

            await self._log(step, LogLevel.WARN, "step.retrying", attempt=attempt,
                            maxAttempts=node.retry.max_attempts, delayMs=delay_ms, error=info["message"])
            logger.warning("Step failed, retrying", run_id=run_id, node_id=node_id, attempt=attempt,
                           delay_ms=delay_ms, error=info["message"])

            current = await self._require_run(run_id)
            if current.status == RunStatus.RUNNING.value:
                await self._enqueue(
                    StepJob(run_id=run_id, node_id=node_id, input=step.input or {}, retry_count=next_count),
                    delay_ms=delay_ms,
                )
            return StepOutcome(StepStatus.RETRYING, checksum=step.checksum, error=info)

        now = utcnow()
        failed = await self._set_step_status(
            run_id, node_id, [StepStatus.RUNNING], StepStatus.FAILED,
            error=info,
            completed_at=now,
            heartbeat_at=None,
        )
        if not failed:
            return await self._current_outcome(run_id, node_id, info)

        await self._log(step, LogLevel.ERROR, "step.failed", attempt=attempt, error=info["message"])
        logger.error("Step failed permanently", run_id=run_id, node_id=node_id, attempt=attempt,
                     error=info["message"])

        await self._set_run_status(run_id, [RunStatus.RUNNING, RunStatus.PAUSED], RunStatus.FAILED,
                                   completed_at=now)
        await self.dlq.add_failed_step(run, step, info["message"])
        return StepOutcome(StepStatus.FAILED, checksum=step.checksum, error=info)

    async def requeue_stale_step(self, step: StepExecution) -> Optional[StepOutcome]:
        """Treat a RUNNING step whose heartbeat expired as a failed attempt."""
        logger.warning("Stale step detected", run_id=step.run_id, node_id=step.node_id,
                       heartbeat_at=str(step.heartbeat_at))
        return await self.handle_node_failure(
            step.run_id, step.node_id,
            TransientExecutionError("Step heartbeat timeout; worker presumed lost"),
        )

    # =========================================================================
    # SCHEDULING HELPERS
    # =========================================================================

    @staticmethod
    def _child_input(runtime: DAGRuntime, node_id: str, steps: Dict[str, StepExecution],
                     run: ExecutionRun) -> Dict[str, Any]:
        """Input for a node: trigger input for roots, else parent outputs.

        A single parent passes its output through; several parents are merged
        in parent-id order (later ids win). Skipped parents contribute nothing.
        """
        parents = dag_module.parent_nodes(runtime, node_id)
        if not parents:
            return dict(run.input or {})

        outputs = [
            steps[parent].output or {}
            for parent in parents
            if parent in steps and steps[parent].status == StepStatus.SUCCESS.value
        ]
        if len(outputs) == 1:
            return dict(outputs[0])

        merged: Dict[str, Any] = {}
        for output in outputs:
            merged.update(output)
        return merged

    async def _reschedule(self, run_id: str) -> None:
        """Re-enqueue every PENDING or RETRYING step whose parents are complete."""
        run = await self._require_run(run_id)
        runtime = await self._dag_for_run(run)
        steps = {s.node_id: s for s in await self.database.get_steps(run_id)}
        statuses = {node: s.status for node, s in steps.items()}

        for node_id in runtime.order:
            step = steps.get(node_id)
            if step is None or step.status not in _SCHEDULABLE:
                continue
            if not branching.parents_complete(runtime, node_id, statuses):
                continue

            if step.status == StepStatus.RETRYING.value and step.input is not None:
                job_input = step.input
            else:
                job_input = self._child_input(runtime, node_id, steps, run)
            await self._enqueue(StepJob(run_id=run_id, node_id=node_id, input=job_input,
                                        retry_count=step.retry_count))

        await self._check_completion(run_id, steps.values())

    async def _check_completion(self, run_id: str,
                                steps: Optional[Iterable[StepExecution]] = None) -> Optional[RunStatus]:
        """Finish the run once every step is terminal."""
        steps = list(steps) if steps is not None else await self.database.get_steps(run_id)
        if not steps or any(s.status not in _TERMINAL_STEP_VALUES for s in steps):
            return None

        final = RunStatus.FAILED if any(s.status == StepStatus.FAILED.value for s in steps) else RunStatus.SUCCESS
        if await self._set_run_status(run_id, [RunStatus.RUNNING], final, completed_at=utcnow()):
            logger.info("Run finished", run_id=run_id, status=final.value, steps=len(steps))
            return final
        return None

    async def _enqueue(self, job: StepJob, delay_ms: int = 0) -> bool:
        accepted = await self.queue.enqueue(job.job_key, job, delay_ms=delay_ms)
        if accepted:
            logger.debug("Job enqueued", job_key=job.job_key, kind=job.kind.value, delay_ms=delay_ms)
        else:
            logger.debug("Duplicate job dropped", job_key=job.job_key)
        return accepted

    # =========================================================================
    # STATE HELPERS
    # =========================================================================

    async def _set_run_status(self, run_id: str, from_statuses: Sequence[RunStatus], to_status: RunStatus,
                              **values: Any) -> bool:
        moved = await self.database.transition_run(
            run_id, [s.value for s in from_statuses], to_status.value, **values
        )
        if moved:
            await self.events.publish(RUN_STATUS, {"runId": run_id, "status": to_status.value})
        return moved

    async def _set_step_status(self, run_id: str, node_id: str, from_statuses: Sequence[Any],
                               to_status: StepStatus, **values: Any) -> bool:
        moved = await self.database.transition_step(
            run_id, node_id, [StepStatus(s).value for s in from_statuses], to_status.value, **values
        )
        if moved:
            payload = {"runId": run_id, "nodeId": node_id, "status": to_status.value}
            if "retry_count" in values:
                payload["retryCount"] = values["retry_count"]
            await self.events.publish(STEP_STATUS, payload)
        return moved

    async def _current_outcome(self, run_id: str, node_id: str, info: Dict[str, Any]) -> StepOutcome:
        current = await self._require_step(run_id, node_id)
        logger.info("Step failure not applied", run_id=run_id, node_id=node_id, status=current.status)
        return StepOutcome(StepStatus(current.status), checksum=current.checksum, error=info)

    @staticmethod
    def _error_info(error: FailureLike) -> Dict[str, Any]:
        if isinstance(error, BaseException):
            info: Dict[str, Any] = {"message": str(error) or type(error).__name__}
            stack = getattr(error, "stack", None)
            if not stack and error.__traceback__ is not None:
                stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            if stack:
                info["stack"] = stack
            status_code = getattr(error, "status_code", None)
            if status_code is not None:
                info["statusCode"] = status_code
            return info
        if isinstance(error, dict):
            return {"message": "Unknown error", **error}
        return {"message": str(error)}

    async def _log(self, step: StepExecution, level: LogLevel, message: str, **metadata: Any) -> None:
        """Append to the step's execution log and publish it on the status hook."""
        entry = await self.database.add_log(ExecutionLog(
            step_id=step.id,
            run_id=step.run_id,
            node_id=step.node_id,
            level=level.value,
            message=message,
            log_metadata=metadata,
        ))
        await self.events.publish(STEP_LOG, self._log_record(entry))

    @staticmethod
    def _log_record(entry: ExecutionLog) -> Dict[str, Any]:
        return {
            "ts": entry.timestamp.isoformat() if entry.timestamp else None,
            "level": entry.level,
            "event": entry.message,
            "runId": entry.run_id,
            "nodeId": entry.node_id,
            "stepId": entry.step_id,
            "payload": entry.log_metadata or {},
        }

    async def _require_run(self, run_id: str) -> ExecutionRun:
        run = await self.database.get_run(run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def _require_step(self, run_id: str, node_id: str) -> StepExecution:
        step = await self.database.get_step(run_id, node_id)
        if step is None:
            raise NotFoundError("step", f"{run_id}/{node_id}")
        return step

    # =========================================================================
    # READ ACCESSORS
    # =========================================================================

    async def get_run(self, run_id: str) -> ExecutionRun:
        return await self._require_run(run_id)

    async def get_step(self, run_id: str, node_id: str) -> StepExecution:
        return await self._require_step(run_id, node_id)

    async def get_steps(self, run_id: str, include_logs: bool = False) -> List[Dict[str, Any]]:
        """Steps of a run as dicts, each with its log entries when requested."""
        await self._require_run(run_id)
        result = []
        for step in await self.database.get_steps(run_id):
            data = step.model_dump()
            if include_logs:
                logs = await self.database.get_logs(run_id, step_id=step.id)
                data["logs"] = [self._log_record(entry) for entry in logs]
            result.append(data)
        return result

    async def get_logs(self, run_id: str, level: Optional[str] = None, node_id: Optional[str] = None,
                       limit: int = 1000) -> List[ExecutionLog]:
        await self._require_run(run_id)
        return await self.database.get_logs(run_id, level=level, node_id=node_id, limit=limit)

    async def stream_logs(self, run_id: str, level: Optional[str] = None,
                          node_id: Optional[str] = None) -> AsyncIterator[str]:
        """Yield the run's log as newline-delimited JSON."""
        for entry in await self.get_logs(run_id, level=level, node_id=node_id):
            yield orjson.dumps(self._log_record(entry)).decode("utf-8") + "\n"
