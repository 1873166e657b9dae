"""
In-process event bus for observability events raised by the engine.

Consumers (metrics, audit, push notifications) subscribe to event types;
publishing never fails the publisher.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from taskgraph.logging_config import get_logger
from taskgraph.models import utcnow

logger = get_logger(__name__)


class EventType(str, Enum):
    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_DELETED = "task.deleted"
    MEMORY_PRESSURE = "cache.memory_pressure"


@dataclass
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


EventHandler = Callable[[Event], Any]


class EventBus:
    """
    Publish/subscribe bus.

    Handlers may be plain callables or coroutine functions; coroutines are
    scheduled on the running loop. A handler subscribed with
    ``event_type=None`` receives every event.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: EventHandler,
        event_type: EventType | None = None,
    ) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(None, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception:
                logger.exception(f"Event handler failed for {event.type.value}")

    def emit(self, event_type: EventType, **payload: Any) -> None:
        self.publish(Event(type=event_type, payload=payload))

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async event handler failed",
                exc_info=task.exception(),
            )

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
