"""Async database service with SQLModel and SQLAlchemy 2.0.

Every run/step status change goes through a conditional UPDATE
(``WHERE status IN (...)``) so concurrent workers never lose updates; the
caller learns from the returned flag whether it won the transition.
"""

import time
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select, col
from sqlalchemy import update, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import Settings
from core.logging import get_logger
from models.database import WorkflowVersion, ExecutionRun, StepExecution, ExecutionLog, utcnow
from models.cache import CacheEntry  # SQLite-backed cache for Redis alternative

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {
                "echo": self.settings.database_echo,
                "future": True,
            }
            if self.settings.is_sqlite:
                if ":memory:" in self.settings.database_url:
                    # One shared connection, otherwise every session sees an empty database
                    engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflow Versions
    # ============================================================================

    async def create_workflow_version(self, version_id: str, workflow_id: str,
                                      dag_definition: Dict[str, Any], pin: bool = True) -> WorkflowVersion:
        """Store the next version of a workflow, optionally pinning it."""
        async with self.get_session() as session:
            stmt = select(func.max(WorkflowVersion.version)).where(WorkflowVersion.workflow_id == workflow_id)
            current = (await session.execute(stmt)).scalar_one_or_none() or 0

            if pin:
                await session.execute(
                    update(WorkflowVersion)
                    .where(col(WorkflowVersion.workflow_id) == workflow_id)
                    .values(is_pinned=False)
                )

            version = WorkflowVersion(
                id=version_id,
                workflow_id=workflow_id,
                version=current + 1,
                dag_definition=dag_definition,
                is_pinned=pin,
            )
            session.add(version)
            await session.commit()
            await session.refresh(version)
            return version

    async def get_workflow_version(self, version_id: str) -> Optional[WorkflowVersion]:
        async with self.get_session() as session:
            return await session.get(WorkflowVersion, version_id)

    async def get_pinned_version(self, workflow_id: str) -> Optional[WorkflowVersion]:
        """Pinned version of a workflow, falling back to None when nothing is pinned."""
        async with self.get_session() as session:
            stmt = select(WorkflowVersion).where(
                WorkflowVersion.workflow_id == workflow_id,
                WorkflowVersion.is_pinned == True,  # noqa: E712
            ).order_by(col(WorkflowVersion.version).desc())
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_workflow_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        async with self.get_session() as session:
            stmt = select(WorkflowVersion).where(
                WorkflowVersion.workflow_id == workflow_id
            ).order_by(col(WorkflowVersion.version))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Runs
    # ============================================================================

    async def create_run(self, run: ExecutionRun, steps: Sequence[StepExecution]) -> ExecutionRun:
        """Insert a run and one step row per node in one transaction."""
        async with self.get_session() as session:
            session.add(run)
            await session.flush()
            session.add_all(list(steps))
            await session.commit()
            await session.refresh(run)
            return run

    async def get_run(self, run_id: str) -> Optional[ExecutionRun]:
        async with self.get_session() as session:
            return await session.get(ExecutionRun, run_id)

    async def transition_run(self, run_id: str, from_statuses: Sequence[str],
                             to_status: str, **values: Any) -> bool:
        """Compare-and-set the run status. Returns True when this call won."""
        async with self.get_session() as session:
            stmt = (
                update(ExecutionRun)
                .where(col(ExecutionRun.id) == run_id, col(ExecutionRun.status).in_(list(from_statuses)))
                .values(status=to_status, **values)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def transition_run_cascade(self, run_id: str, from_statuses: Sequence[str], to_status: str,
                                     step_from: Sequence[str], step_to: str, **values: Any) -> bool:
        """Move a run and all its matching steps in a single transaction.

        Nothing is written when the run is not in one of ``from_statuses``.
        """
        async with self.get_session() as session:
            result = await session.execute(
                update(ExecutionRun)
                .where(col(ExecutionRun.id) == run_id, col(ExecutionRun.status).in_(list(from_statuses)))
                .values(status=to_status, **values)
            )
            if result.rowcount == 0:
                await session.rollback()
                return False

            steps = await session.execute(
                update(StepExecution)
                .where(col(StepExecution.run_id) == run_id, col(StepExecution.status).in_(list(step_from)))
                .values(status=step_to, version=StepExecution.version + 1, completed_at=utcnow())
            )
            await session.commit()
            logger.debug("Run transition cascaded", run_id=run_id, status=to_status, steps=steps.rowcount)
            return True

    # ============================================================================
    # Step Executions
    # ============================================================================

    async def get_step(self, run_id: str, node_id: str) -> Optional[StepExecution]:
        async with self.get_session() as session:
            stmt = select(StepExecution).where(
                StepExecution.run_id == run_id,
                StepExecution.node_id == node_id,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_steps(self, run_id: str) -> List[StepExecution]:
        async with self.get_session() as session:
            stmt = select(StepExecution).where(
                StepExecution.run_id == run_id
            ).order_by(col(StepExecution.node_id))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def transition_step(self, run_id: str, node_id: str, from_statuses: Sequence[str],
                              to_status: str, **values: Any) -> bool:
        """Compare-and-set one step's status, bumping its version."""
        async with self.get_session() as session:
            stmt = (
                update(StepExecution)
                .where(
                    col(StepExecution.run_id) == run_id,
                    col(StepExecution.node_id) == node_id,
                    col(StepExecution.status).in_(list(from_statuses)),
                )
                .values(status=to_status, version=StepExecution.version + 1, **values)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def transition_steps(self, run_id: str, node_ids: Sequence[str], from_statuses: Sequence[str],
                               to_status: str, **values: Any) -> int:
        """Bulk compare-and-set. Returns the number of rows moved."""
        if not node_ids:
            return 0
        async with self.get_session() as session:
            stmt = (
                update(StepExecution)
                .where(
                    col(StepExecution.run_id) == run_id,
                    col(StepExecution.node_id).in_(list(node_ids)),
                    col(StepExecution.status).in_(list(from_statuses)),
                )
                .values(status=to_status, version=StepExecution.version + 1, **values)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def touch_step(self, run_id: str, node_id: str, heartbeat_at: datetime,
                         retry_count: Optional[int] = None) -> bool:
        """Refresh the heartbeat of a RUNNING step, optionally only for one attempt."""
        async with self.get_session() as session:
            stmt = (
                update(StepExecution)
                .where(
                    col(StepExecution.run_id) == run_id,
                    col(StepExecution.node_id) == node_id,
                    col(StepExecution.status) == "RUNNING",
                )
                .values(heartbeat_at=heartbeat_at)
            )
            if retry_count is not None:
                stmt = stmt.where(col(StepExecution.retry_count) == retry_count)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def find_stale_steps(self, cutoff: datetime, run_status: str = "RUNNING",
                               limit: int = 100) -> List[StepExecution]:
        """RUNNING steps whose heartbeat is older than cutoff, in runs with run_status."""
        async with self.get_session() as session:
            stmt = (
                select(StepExecution)
                .join(ExecutionRun, col(ExecutionRun.id) == col(StepExecution.run_id))
                .where(
                    col(StepExecution.status) == "RUNNING",
                    col(StepExecution.heartbeat_at).is_not(None),
                    col(StepExecution.heartbeat_at) < cutoff,
                    col(ExecutionRun.status) == run_status,
                )
                .order_by(col(StepExecution.heartbeat_at))
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Execution Logs
    # ============================================================================

    async def add_log(self, entry: ExecutionLog) -> ExecutionLog:
        async with self.get_session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def get_logs(self, run_id: str, level: Optional[str] = None, node_id: Optional[str] = None,
                       step_id: Optional[str] = None, limit: int = 1000) -> List[ExecutionLog]:
        """Logs of a run in insertion order, optionally filtered."""
        async with self.get_session() as session:
            stmt = select(ExecutionLog).where(ExecutionLog.run_id == run_id)
            if level:
                stmt = stmt.where(ExecutionLog.level == level)
            if node_id:
                stmt = stmt.where(ExecutionLog.node_id == node_id)
            if step_id:
                stmt = stmt.where(ExecutionLog.step_id == step_id)
            stmt = stmt.order_by(col(ExecutionLog.id)).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Cache Entries (SQLite-backed cache for Redis alternative)
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[str]:
        """Get cache value by key. Returns None if expired or not found."""
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)

                if not entry:
                    return None

                if entry.is_expired():
                    await session.delete(entry)
                    await session.commit()
                    return None

                return entry.value

        except Exception as e:
            logger.error("Failed to get cache entry", key=key, error=str(e))
            return None

    async def set_cache_entry(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set cache value with optional TTL in seconds."""
        try:
            now = time.time()
            expires_at = now + ttl if ttl else None

            async with self.get_session() as session:
                existing = await session.get(CacheEntry, key)

                if existing:
                    existing.value = value
                    existing.expires_at = expires_at
                    existing.created_at = now
                else:
                    session.add(CacheEntry(key=key, value=value, expires_at=expires_at, created_at=now))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set cache entry", key=key, error=str(e))
            return False

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key."""
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)
                if not entry:
                    return False
                await session.delete(entry)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete cache entry", key=key, error=str(e))
            return False
