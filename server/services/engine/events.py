"""Status event bus.

The engine publishes run/step status changes and step log lines here as
plain dicts. Subscribers (WebSocket fan-out, metrics, tests) register async
callbacks per topic or for every topic with "*". Delivery failures are
logged and never reach the engine.
"""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

from core.logging import get_logger

logger = get_logger(__name__)

RUN_STATUS = "run.status"
STEP_STATUS = "step.status"
STEP_LOG = "step.log"

Subscriber = Callable[[str, Dict[str, Any]], Awaitable[None]]


class EventBus:
    """Topic-based async publish/subscribe."""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, callback: Subscriber) -> None:
        async with self._lock:
            self._subscribers[topic].append(callback)

    async def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        async with self._lock:
            if callback in self._subscribers.get(topic, []):
                self._subscribers[topic].remove(callback)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        """Deliver to topic subscribers and wildcard subscribers concurrently."""
        async with self._lock:
            callbacks = list(self._subscribers.get(topic, [])) + list(self._subscribers.get("*", []))

        if not callbacks:
            return

        async def deliver(callback: Subscriber):
            try:
                await callback(topic, payload)
            except Exception as e:
                logger.warning("Event subscriber failed", topic=topic, error=str(e))

        async with asyncio.TaskGroup() as tg:
            for callback in callbacks:
                tg.create_task(deliver(callback))
