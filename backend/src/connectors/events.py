"""
In-process event bus for connector lifecycle notifications.

Event types:
- connector.registered
- instance.created, instance.updated, instance.deleted
- connector.execution.completed / .failed / .cancelled

Handlers run synchronously in subscription order. A failing handler is
logged and does not stop delivery to the others.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable


logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class ConnectorEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[ConnectorEvent], None]


class ConnectorEventBus:
    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to one event type, or to every event with "*"."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
        return False

    def publish(self, event_type: str, payload: dict[str, Any]) -> ConnectorEvent:
        event = ConnectorEvent(type=event_type, payload=payload)
        with self._lock:
            handlers = [*self._handlers.get(event_type, []), *self._handlers.get(WILDCARD, [])]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event_type}: {e}",
                    exc_info=True,
                )
        return event
