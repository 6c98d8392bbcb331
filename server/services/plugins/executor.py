"""Plugin Executor - registry-based dispatch of step logic by node type.

Every executable NodeType must have exactly one handler; the registry is
checked for completeness at construction so a new node type cannot ship
without an implementation. IF nodes are control nodes evaluated by the
engine and never reach this executor.
"""

import time
import traceback
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

import httpx

from core.config import Settings
from core.logging import get_logger, log_execution_time
from models.workflow import NodeType
from services.engine import retry
from services.engine.models import PluginResult, StepContext
from services.plugins.api_proxy import handle_api_proxy
from services.plugins.data_aggregator import handle_data_aggregator
from services.plugins.delay import handle_delay
from services.plugins.sandbox import handle_custom_code
from services.plugins.text_transform import handle_text_transform

if TYPE_CHECKING:
    from core.cache import CacheService

logger = get_logger(__name__)

Handler = Callable[[StepContext], Awaitable[Dict[str, Any]]]

# Node types the engine evaluates itself
CONTROL_TYPES = frozenset([NodeType.IF])
EXECUTABLE_TYPES = frozenset(set(NodeType) - CONTROL_TYPES)


class PluginExecutor:
    """Runs one step's plugin and normalizes its outcome into a PluginResult."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional["CacheService"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.cache = cache
        self.transport = transport
        self._handlers = self._build_handler_registry()

        missing = EXECUTABLE_TYPES - set(self._handlers)
        if missing:
            raise RuntimeError(f"No plugin handler registered for: {sorted(t.value for t in missing)}")

    def _build_handler_registry(self) -> Dict[NodeType, Handler]:
        """Build handler registry with service dependencies bound via partial."""
        return {
            NodeType.TEXT_TRANSFORM: handle_text_transform,
            NodeType.API_PROXY: partial(handle_api_proxy, settings=self.settings, cache=self.cache,
                                        transport=self.transport),
            NodeType.DATA_AGGREGATOR: handle_data_aggregator,
            NodeType.DELAY: partial(handle_delay, settings=self.settings),
            NodeType.CUSTOM: partial(handle_custom_code, settings=self.settings),
        }

    def register(self, node_type: NodeType, handler: Handler) -> None:
        """Replace the handler for one node type."""
        if node_type in CONTROL_TYPES:
            raise ValueError(f"{node_type.value} nodes are evaluated by the engine")
        self._handlers[node_type] = handler

    async def execute(self, context: StepContext) -> PluginResult:
        """Execute a step. Never raises; failures come back as PluginResult."""
        start = time.monotonic()
        handler = self._handlers.get(NodeType(context.node_type))

        if handler is None:
            return PluginResult(success=False, error=f"Unknown plugin type: {context.node_type}")

        try:
            raw = await handler(context)
        except Exception as e:
            logger.error("Plugin raised", node_id=context.node_id, node_type=str(context.node_type),
                         error=str(e))
            return PluginResult(
                success=False,
                error=str(e) or type(e).__name__,
                retryable=retry.is_retryable(e),
                status_code=getattr(e, "status_code", None),
                duration_ms=int((time.monotonic() - start) * 1000),
                stack=traceback.format_exc(),
            )

        end = time.monotonic()
        duration_ms = int((end - start) * 1000)

        if raw.get("success"):
            log_execution_time(logger, f"plugin_{NodeType(context.node_type).value}", start, end, node_id=context.node_id)
            return PluginResult(
                success=True,
                output=raw.get("output") or {},
                duration_ms=duration_ms,
                deferred_ms=raw.get("deferred_ms"),
            )

        error = raw.get("error") or "Unknown error"
        status_code = raw.get("status_code")
        retryable = raw.get("retryable")
        if not isinstance(retryable, bool):
            retryable = retry.is_retryable({"message": error, "statusCode": status_code})

        return PluginResult(
            success=False,
            error=error,
            retryable=retryable,
            status_code=status_code,
            duration_ms=duration_ms,
        )
