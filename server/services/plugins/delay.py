"""DELAY plugin.

Modes:
- inline: ms <= DELAY_INLINE_THRESHOLD_MS (or config.blocking=true) sleeps in the worker
- deferred: longer delays return at once with deferred_ms; the engine parks the
  step in RUNNING and a timer job completes it when the delay elapses
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from core.config import Settings
from core.logging import get_logger
from services.engine.models import StepContext

logger = get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


async def handle_delay(context: StepContext, settings: Settings) -> Dict[str, Any]:
    config = context.config
    ms = config.get("ms") or context.input.get("ms") or 1000

    if not _is_number(ms) or ms <= 0:
        return {"success": False, "error": "Delay must be a positive number"}
    if ms > settings.delay_max_ms:
        return {"success": False, "error": f"Delay cannot exceed {settings.delay_max_ms}ms"}

    now = datetime.now(timezone.utc)

    if config.get("blocking") is True or ms <= settings.delay_inline_threshold_ms:
        start = time.monotonic()
        await asyncio.sleep(ms / 1000.0)
        return {
            "success": True,
            "output": {
                "requestedMs": ms,
                "actualMs": int((time.monotonic() - start) * 1000),
                "blocking": True,
                "completedAt": datetime.now(timezone.utc).isoformat(),
            },
        }

    logger.info("Deferring delay", run_id=context.run_id, node_id=context.node_id, ms=ms)
    return {
        "success": True,
        "deferred_ms": int(ms),
        "output": {
            "requestedMs": ms,
            "blocking": False,
            "scheduledAt": now.isoformat(),
            "willCompleteAt": (now + timedelta(milliseconds=ms)).isoformat(),
        },
    }
