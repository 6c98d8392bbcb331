"""Step idempotency: canonical checksums and prior-result reuse.

A step's checksum covers {runId, nodeId, input, pluginVersion}. Keys are
sorted recursively before hashing so semantically identical inputs with a
different key order hash the same.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

import orjson

from constants import BUILTIN_PLUGIN_VERSION
from core.logging import get_logger
from services.engine.models import StepStatus

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


def canonical_json(value: Any) -> bytes:
    """Compact JSON with object keys sorted at every level."""
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)


def checksum(run_id: str, node_id: str, input: Optional[Dict[str, Any]],
             plugin_version: Optional[str] = None) -> str:
    """SHA-256 hex digest identifying one logical step execution."""
    payload = {
        "runId": run_id,
        "nodeId": node_id,
        "input": input if input is not None else {},
        "pluginVersion": plugin_version or BUILTIN_PLUGIN_VERSION,
    }
    return hashlib.sha256(canonical_json(payload)).hexdigest()


@dataclass
class IdempotencyCheck:
    reuse: bool
    output: Optional[Dict[str, Any]] = None


class IdempotencyManager:
    """Decides whether a stored step result can stand in for a new execution."""

    def __init__(self, database: "Database"):
        self.database = database

    async def check(self, run_id: str, node_id: str, step_checksum: str) -> IdempotencyCheck:
        step = await self.database.get_step(run_id, node_id)
        if step is None:
            return IdempotencyCheck(reuse=False)

        if step.status == StepStatus.SUCCESS.value and step.checksum == step_checksum:
            logger.debug("Reusing prior step result", run_id=run_id, node_id=node_id)
            return IdempotencyCheck(reuse=True, output=step.output or {})

        return IdempotencyCheck(reuse=False)
