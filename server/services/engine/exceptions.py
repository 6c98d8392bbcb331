"""Execution engine exception hierarchy."""

from typing import Optional


class EngineError(Exception):
    """Base exception for all engine errors."""


class ValidationError(EngineError):
    """Invalid DAG definition, node config or state transition.

    Never retried; surfaces to the caller before anything reaches the queue.
    """


class NotFoundError(EngineError):
    """Missing run, workflow version or step."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ExecutionError(EngineError):
    """Failure raised while executing a step."""

    retryable: Optional[bool] = None

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientExecutionError(ExecutionError):
    """Network/timeout class failure, retryable."""

    retryable = True


class PermanentExecutionError(ExecutionError):
    """Business-logic failure from a plugin, never retried."""

    retryable = False


class SandboxError(ExecutionError):
    """Isolated plugin process timed out, crashed or returned garbage."""

    def __init__(self, message: str, timed_out: bool = False, exit_code: Optional[int] = None):
        self.timed_out = timed_out
        self.exit_code = exit_code
        super().__init__(message)
