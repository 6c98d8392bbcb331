"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect RUNNING steps whose heartbeat expired (worker died mid-step)
- Hand them back to the engine as failed attempts so they are retried
"""

import asyncio
from datetime import timedelta
from typing import Optional, TYPE_CHECKING

from core.logging import get_logger
from models.database import utcnow
from services.engine.models import RunStatus

if TYPE_CHECKING:
    from core.database import Database
    from services.engine.orchestrator import Engine

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that recovers abandoned step executions.

    Conductor's sweeper pattern:
    - Periodically scans for RUNNING steps in RUNNING runs
    - Detects steps with stale heartbeats
    - Moves them to RETRYING (or FAILED once attempts are exhausted)
    """

    def __init__(self, engine: "Engine", database: "Database",
                 heartbeat_timeout: int = 300,  # 5 minutes
                 sweep_interval: int = 60,      # 1 minute
                 batch_size: int = 100):
        """Initialize recovery sweeper.

        Args:
            engine: Engine the stale steps are handed back to
            database: Database to scan
            heartbeat_timeout: Seconds before a step is considered stuck
            sweep_interval: Seconds between sweep runs
            batch_size: Max steps recovered per sweep
        """
        self.engine = engine
        self.database = database
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    heartbeat_timeout=self.heartbeat_timeout,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> int:
        """Single sweep iteration. Returns the number of steps recovered."""
        cutoff = utcnow() - timedelta(seconds=self.heartbeat_timeout)
        stale = await self.database.find_stale_steps(cutoff, run_status=RunStatus.RUNNING.value,
                                                     limit=self.batch_size)
        if not stale:
            return 0

        logger.debug("Sweeping stale steps", count=len(stale))
        recovered = 0
        for step in stale:
            try:
                outcome = await self.engine.requeue_stale_step(step)
            except Exception as e:
                logger.error("Failed to recover step", run_id=step.run_id,
                             node_id=step.node_id, error=str(e))
                continue
            if outcome is not None:
                recovered += 1

        if recovered:
            logger.info("Recovered stale steps", count=recovered)
        return recovered
