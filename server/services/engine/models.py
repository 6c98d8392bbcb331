"""Execution engine state models.

Run and step lifecycles, the compiled DAG runtime, and the plain data objects
passed between the orchestrator, the plugins and the work queue. Everything
that crosses the queue is JSON-serializable via to_dict/from_dict.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_BACKOFF_MS, DEFAULT_BACKOFF_MULTIPLIER
from models.workflow import NodeType
from services.engine.exceptions import ExecutionError, TransientExecutionError, PermanentExecutionError


class RunStatus(str, Enum):
    """Run lifecycle.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILED
                           -> CANCELLED
        RUNNING <-> PAUSED
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Step lifecycle.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILED
                           -> SKIPPED
        RUNNING -> RETRYING -> RUNNING
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class JobKind(str, Enum):
    EXECUTE = "execute"
    COMPLETE_DEFERRED = "complete_deferred"


TERMINAL_RUN_STATUSES = frozenset([RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED])
TERMINAL_STEP_STATUSES = frozenset([StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED])
# A parent in one of these states satisfies the fan-in join of its children
COMPLETE_STEP_STATUSES = frozenset([StepStatus.SUCCESS, StepStatus.SKIPPED])


@dataclass(frozen=True)
class RetryPolicy:
    """Resolved retry configuration for one node.

    Delay formula: backoff_ms * (backoff_multiplier ^ (attempt - 1)), jittered.
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxAttempts": self.max_attempts,
            "backoffMs": self.backoff_ms,
            "backoffMultiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("maxAttempts", DEFAULT_MAX_ATTEMPTS),
            backoff_ms=data.get("backoffMs", DEFAULT_BACKOFF_MS),
            backoff_multiplier=data.get("backoffMultiplier", DEFAULT_BACKOFF_MULTIPLIER),
        )


@dataclass(frozen=True)
class NodeRuntime:
    """Compiled node: config copy, resolved retry policy, parsed IF condition."""
    id: str
    type: NodeType
    config: Dict[str, Any]
    retry: RetryPolicy
    plugin_version: Optional[str] = None
    condition: Any = None  # expressions.Expression for IF nodes


@dataclass(frozen=True)
class EdgeRuntime:
    source: str
    target: str
    label: Optional[str] = None


@dataclass
class DAGRuntime:
    """Compiled, read-only view of a workflow definition."""
    nodes: Dict[str, NodeRuntime]
    edges: List[EdgeRuntime]
    children: Dict[str, List[str]]
    parents: Dict[str, List[str]]
    order: List[str]
    max_concurrency: Optional[int] = None

    def node(self, node_id: str) -> Optional[NodeRuntime]:
        return self.nodes.get(node_id)


@dataclass
class StepContext:
    """Everything a plugin may read while executing one step."""
    run_id: str
    node_id: str
    node_type: NodeType
    config: Dict[str, Any]
    input: Dict[str, Any]
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # {node_id: {"outputs": {...}}}
    inputs: Dict[str, Any] = field(default_factory=dict)  # run trigger input
    retry_count: int = 0


@dataclass
class PluginResult:
    """Normalized plugin outcome."""
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retryable: bool = False
    status_code: Optional[int] = None
    duration_ms: int = 0
    deferred_ms: Optional[int] = None
    stack: Optional[str] = None

    def to_exception(self) -> ExecutionError:
        """Failure as an exception the retry policy can classify."""
        cls = TransientExecutionError if self.retryable else PermanentExecutionError
        error = cls(self.error or "Unknown error", status_code=self.status_code)
        error.stack = self.stack
        return error


@dataclass
class StepJob:
    """Queue payload for one step attempt."""
    run_id: str
    node_id: str
    input: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    kind: JobKind = JobKind.EXECUTE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: float = field(default_factory=time.time)

    @property
    def job_key(self) -> str:
        """Stable de-duplication key (run, node, attempt)."""
        key = f"{self.run_id}:{self.node_id}:{self.retry_count}"
        if self.kind == JobKind.COMPLETE_DEFERRED:
            key += ":deferred"
        return key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "input": self.input,
            "retry_count": self.retry_count,
            "kind": self.kind.value,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepJob":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            run_id=data["run_id"],
            node_id=data["node_id"],
            input=data.get("input") or {},
            retry_count=data.get("retry_count", 0),
            kind=JobKind(data.get("kind", JobKind.EXECUTE.value)),
            enqueued_at=data.get("enqueued_at", time.time()),
        )


@dataclass
class StepOutcome:
    """What execute_node did with one job."""
    status: StepStatus
    checksum: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    reused: bool = False
    deferred: bool = False


@dataclass
class DLQEntry:
    """Dead letter entry for a permanently failed step."""
    id: str
    run_id: str
    workflow_id: str
    node_id: str
    node_type: str
    error: str
    input: Dict[str, Any]
    retry_count: int
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "error": self.error,
            "input": self.input,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DLQEntry":
        return cls(
            id=data["id"],
            run_id=data["run_id"],
            workflow_id=data["workflow_id"],
            node_id=data["node_id"],
            node_type=data["node_type"],
            error=data["error"],
            input=data.get("input", {}),
            retry_count=data.get("retry_count", 0),
            created_at=data.get("created_at", time.time()),
        )
