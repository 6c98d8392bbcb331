"""Workflow execution engine.

Validation and compilation of DAG definitions, the run/step state machine,
retry policy, IF branching and the queue worker that drives it all.
"""

from .exceptions import (
    EngineError,
    ValidationError,
    NotFoundError,
    ExecutionError,
    TransientExecutionError,
    PermanentExecutionError,
    SandboxError,
)
from .models import (
    RunStatus,
    StepStatus,
    LogLevel,
    JobKind,
    RetryPolicy,
    DAGRuntime,
    StepContext,
    PluginResult,
    StepJob,
    StepOutcome,
)
from .events import EventBus
from .dlq import create_dlq_handler, DLQHandler, NullDLQHandler
from .orchestrator import Engine
from .worker import StepWorker
from .recovery import RecoverySweeper

__all__ = [
    "EngineError",
    "ValidationError",
    "NotFoundError",
    "ExecutionError",
    "TransientExecutionError",
    "PermanentExecutionError",
    "SandboxError",
    "RunStatus",
    "StepStatus",
    "LogLevel",
    "JobKind",
    "RetryPolicy",
    "DAGRuntime",
    "StepContext",
    "PluginResult",
    "StepJob",
    "StepOutcome",
    "EventBus",
    "create_dlq_handler",
    "DLQHandler",
    "NullDLQHandler",
    "Engine",
    "StepWorker",
    "RecoverySweeper",
]
