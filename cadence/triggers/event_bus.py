"""In-process pub/sub event bus for domain events.

Categories are the five ``TriggerType`` values.  Subscribers are plain
callables (sync or async) receiving the ``Event``.  The bus snapshots the
subscriber list before iterating so that handlers added during publish don't
cause mutation issues.
"""

from __future__ import annotations

import inspect
import logging
from typing import Callable, Union

from cadence.types import Event, TriggerType

logger = logging.getLogger(__name__)

# Payload keys each category carries; documentation for publishers.
PAYLOAD_SCHEMAS: dict[TriggerType, tuple[str, ...]] = {
    TriggerType.STATUS_CHANGE: ("previous_status", "new_status"),
    TriggerType.SCORE_THRESHOLD: ("score_field", "previous_score", "new_score"),
    TriggerType.INTERACTION_ADDED: ("type",),
    TriggerType.TASK_COMPLETED: ("type", "task_id"),
    TriggerType.DATE_BASED: ("date_field", "date_value"),
}


class EventBus:
    """Lightweight, typed, in-process pub/sub bus.

    Usage::

        bus = EventBus()
        bus.subscribe(TriggerType.STATUS_CHANGE, engine.on_event)
        await bus.publish(Event(category="status_change", entity_id="p-1",
                                payload={"previous_status": "Contacted",
                                         "new_status": "Qualified"}))
    """

    def __init__(self) -> None:
        self._subscribers: dict[TriggerType, list[Callable]] = {}

    def subscribe(self, category: Union[TriggerType, str], handler: Callable) -> None:
        """Register *handler* for *category*.  Raises ValueError on an unknown category."""
        self._subscribers.setdefault(TriggerType(category), []).append(handler)

    def subscribe_all(self, handler: Callable) -> None:
        """Register *handler* for every category."""
        for category in TriggerType:
            self.subscribe(category, handler)

    def unsubscribe(self, category: Union[TriggerType, str], handler: Callable) -> None:
        """Remove the first occurrence of *handler* from *category*.  Silently ignores missing."""
        handlers = self._subscribers.get(TriggerType(category), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def subscriber_count(self, category: Union[TriggerType, str]) -> int:
        return len(self._subscribers.get(TriggerType(category), []))

    async def publish(self, event: Event) -> int:
        """Deliver *event* to every subscriber of its category.

        Exceptions raised by individual subscribers are logged and swallowed so
        that one failing handler cannot block the rest.

        Returns:
            Number of handlers that completed without raising.
        """
        handlers = list(self._subscribers.get(TriggerType(event.category), []))
        delivered = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception(
                    "EventBus subscriber raised for category=%r event=%s",
                    event.category.value, event.id,
                )
        return delivered
