"""Dead Letter Queue (DLQ) handler for permanently failed steps.

Optional: enabled with DLQ_ENABLED=true. When enabled, steps that exhaust
their retries are stored in the cache for inspection and manual replay
through Engine.retry_step.

Usage:
    dlq = create_dlq_handler(cache, enabled=settings.dlq_enabled)
    await dlq.add_failed_step(run, step, error)
"""

import uuid
from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING

from constants import DLQ_KEY_PREFIX
from core.logging import get_logger
from services.engine.models import DLQEntry

if TYPE_CHECKING:
    from core.cache import CacheService
    from models.database import ExecutionRun, StepExecution

logger = get_logger(__name__)

# Entries outlive normal cache data
DLQ_TTL_SECONDS = 7 * 24 * 3600


def dlq_key(run_id: str) -> str:
    return f"{DLQ_KEY_PREFIX}:{run_id}"


class DLQHandlerProtocol(Protocol):
    """Protocol for DLQ handlers (enables duck typing)."""

    async def add_failed_step(self, run: "ExecutionRun", step: "StepExecution",
                              error: str) -> bool:
        ...

    async def get_entries(self, run_id: str) -> List[DLQEntry]:
        ...

    @property
    def enabled(self) -> bool:
        ...


class NullDLQHandler:
    """No-op DLQ handler when DLQ is disabled (Null Object pattern)."""

    @property
    def enabled(self) -> bool:
        return False

    async def add_failed_step(self, run: "ExecutionRun", step: "StepExecution",
                              error: str) -> bool:
        logger.debug("DLQ disabled, skipping failed step storage",
                     node_id=step.node_id, error=error)
        return True

    async def get_entries(self, run_id: str) -> List[DLQEntry]:
        return []


class DLQHandler:
    """Active DLQ handler, one list of entries per run in the cache."""

    def __init__(self, cache: "CacheService"):
        self.cache = cache

    @property
    def enabled(self) -> bool:
        return True

    async def add_failed_step(self, run: "ExecutionRun", step: "StepExecution",
                              error: str) -> bool:
        """Add a failed step to the Dead Letter Queue.

        Args:
            run: The run the step belongs to
            step: Failed step row (input and retry count at failure time)
            error: Final error message

        Returns:
            True if stored, False otherwise
        """
        entry = DLQEntry(
            id=str(uuid.uuid4()),
            run_id=run.id,
            workflow_id=run.workflow_id,
            node_id=step.node_id,
            node_type=step.node_type,
            error=error,
            input=step.input or {},
            retry_count=step.retry_count,
        )
        try:
            existing: Optional[List[Dict[str, Any]]] = await self.cache.get(dlq_key(run.id))
            entries = list(existing or [])
            entries.append(entry.to_dict())
            stored = await self.cache.set(dlq_key(run.id), entries, ttl=DLQ_TTL_SECONDS)
            if stored:
                logger.info("Step added to DLQ", entry_id=entry.id, run_id=run.id,
                            node_id=step.node_id, retry_count=step.retry_count)
            else:
                logger.error("Failed to add step to DLQ", node_id=step.node_id, error=error)
            return stored

        except Exception as e:
            logger.error("Exception adding step to DLQ", node_id=step.node_id, error=str(e))
            return False

    async def get_entries(self, run_id: str) -> List[DLQEntry]:
        raw = await self.cache.get(dlq_key(run_id)) or []
        return [DLQEntry.from_dict(item) for item in raw]


def create_dlq_handler(cache: Optional["CacheService"], enabled: bool = False) -> DLQHandlerProtocol:
    """Factory function to create appropriate DLQ handler.

    Returns:
        DLQHandler if enabled and a cache is available, NullDLQHandler otherwise
    """
    if enabled and cache is not None:
        logger.info("DLQ enabled")
        return DLQHandler(cache)
    logger.debug("DLQ disabled")
    return NullDLQHandler()
