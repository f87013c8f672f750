from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

APPLIED = "applied"
PERSISTENCE_FAILED = "delivery.persistence_failed"


@dataclass(frozen=True)
class AppliedEvent:
    """Payload of the ``applied`` event: a stored row and what was done to it."""

    object: Any
    kind: str


class EventBus:
    """A simple in-memory event bus for publishing and subscribing to events."""

    def __init__(self):
        """Initializes the EventBus with an empty dictionary of subscribers."""
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, callback: Callable[[Any], Any]):
        """Subscribes a callback function to a specific event type.

        Args:
            event_type: The type of event to subscribe to.
            callback: The function to call when the event is published.
        """
        self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: Callable[[Any], Any]):
        """Unsubscribes a callback function from a specific event type.

        Args:
            event_type: The type of event to unsubscribe from.
            callback: The function to remove from the subscribers.
        """
        if callback in self._subscribers[event_type]:
            self._subscribers[event_type].remove(callback)

    async def publish(self, event_type: str, data: Any):
        """Publishes an event to all subscribed callback functions.

        A failing subscriber is logged and does not affect the others.

        Args:
            event_type: The type of event to publish.
            data: The data associated with the event.
        """
        for callback in list(self._subscribers[event_type]):
            # Run callbacks concurrently if they are async
            if asyncio.iscoroutinefunction(callback):
                task = asyncio.create_task(callback(data))
                self._tasks.add(task)
                task.add_done_callback(lambda done, name=event_type: self._task_done(name, done))
                continue
            try:
                callback(data)
            except Exception:
                logger.exception("Subscriber for %s failed", event_type)

    def _task_done(self, event_type: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Subscriber for %s failed", event_type, exc_info=(type(exc), exc, exc.__traceback__)
            )

    async def drain(self) -> None:
        """Waits for async subscribers that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def on_applied(self, obj: Any, kind: str) -> None:
        """Notifies subscribers that an inbound activity changed ``obj``."""
        await self.publish(APPLIED, AppliedEvent(object=obj, kind=kind))


__all__ = ["APPLIED", "PERSISTENCE_FAILED", "AppliedEvent", "EventBus"]
