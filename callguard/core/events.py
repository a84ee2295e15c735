"""Listener registry shared by the retry executor and the offline queue."""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Enum, dict[str, Any]], None]


class EventEmitter:
    """Publish/subscribe for named event types.

    Handlers are called synchronously as ``handler(event_type, payload)``.
    A handler that raises is logged and skipped; the emitter never sees
    the exception.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[Enum, list[EventHandler]] = defaultdict(list)

    def add_listener(self, event_type: Enum, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def remove_listener(self, event_type: Enum, handler: EventHandler) -> None:
        try:
            self._handlers[event_type].remove(handler)
        except ValueError:
            pass

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def listener_count(self, event_type: Enum | None = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(event_type, ()))

    def emit(self, event_type: Enum, payload: dict[str, Any]) -> None:
        # Copy so a handler may unsubscribe itself while being called
        for handler in list(self._handlers.get(event_type, ())):
            try:
                handler(event_type, payload)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)
