"""In-process event bus for replay and debugger notifications.

Handlers are called synchronously in emission order. A failing handler is
logged and does not prevent the remaining handlers from running.

Usage::

    bus = EventBus()
    bus.subscribe(EventType.INTERACTION_REPLAYED, lambda e: print(e.data["progress"]))
    bus.emit(EventType.INTERACTION_REPLAYED, {"step": 1, "progress": 33.3})
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from pipeline_debug.timestamps import iso_now

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    REPLAY_STARTED = "replayStarted"
    INTERACTION_REPLAYED = "interactionReplayed"
    REPLAY_PAUSED = "replayPaused"
    REPLAY_RESUMED = "replayResumed"
    REPLAY_STOPPED = "replayStopped"
    REPLAY_COMPLETED = "replayCompleted"
    REPLAY_ERROR = "replayError"
    SPEED_CHANGED = "speedChanged"
    OPERATION_STARTED = "operationStarted"
    OPERATION_COMPLETED = "operationCompleted"


class Event(BaseModel):
    event_type: str
    timestamp: str = Field(default_factory=iso_now)
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""


EventHandler = Callable[[Event], None]


class EventBus:
    """Listener registration and synchronous dispatch.

    Thread-safe: subscriptions are guarded by a lock; handlers run outside it.
    """

    def __init__(self, source: str = "") -> None:
        self._source = source
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(str(event_type), [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(str(event_type), [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def subscriber_count(self, event_type: EventType | str) -> int:
        with self._lock:
            return len(self._handlers.get(str(event_type), []))

    def emit(self, event_type: EventType | str, data: dict[str, Any] | None = None) -> Event:
        """Dispatch an event to every handler registered for its type."""
        event = Event(event_type=str(event_type), data=data or {}, source=self._source)
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Handler for {event.event_type} failed: {e}")
        return event
