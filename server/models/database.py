"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowVersion(SQLModel, table=True):
    """Immutable, versioned workflow DAG definitions."""

    __tablename__ = "workflow_versions"
    __table_args__ = (UniqueConstraint("workflow_id", "version", name="uq_workflow_version"),)

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    version: int = Field(default=1)
    dag_definition: Dict[str, Any] = Field(sa_column=Column(JSON))
    is_pinned: bool = Field(default=False, index=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class ExecutionRun(SQLModel, table=True):
    """One execution attempt of a pinned workflow version. Never deleted."""

    __tablename__ = "execution_runs"

    id: str = Field(primary_key=True, max_length=255)
    workflow_version_id: str = Field(foreign_key="workflow_versions.id", max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    status: str = Field(default="PENDING", max_length=20, index=True)
    input: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    run_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class StepExecution(SQLModel, table=True):
    """Exactly one row per (run, node); retries update the row in place."""

    __tablename__ = "step_executions"
    __table_args__ = (UniqueConstraint("run_id", "node_id", name="uq_step_run_node"),)

    id: str = Field(primary_key=True, max_length=255)
    run_id: str = Field(foreign_key="execution_runs.id", index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=50)
    status: str = Field(default="PENDING", max_length=20, index=True)
    execution_key: str = Field(max_length=600)
    checksum: Optional[str] = Field(default=None, max_length=64)
    retry_count: int = Field(default=0)
    version: int = Field(default=0)
    input: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    heartbeat_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class ExecutionLog(SQLModel, table=True):
    """Append-only step event stream."""

    __tablename__ = "execution_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    step_id: str = Field(foreign_key="step_executions.id", index=True, max_length=255)
    run_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    level: str = Field(default="INFO", max_length=10)
    message: str = Field(max_length=4000)
    log_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
