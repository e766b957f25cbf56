"""Event emitters for the deploy engine."""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Dict, Iterable, List

from deploy_engine.core.events_model import ApplicationEvent, LOG_LEVELS


ALLOWED_EVENTS = {
    "application.log",
    "application.status_changed",
    "application.removed",
}

logger = logging.getLogger("deploy_engine.events")


def _validate(event: ApplicationEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.application_id:
        raise ValueError("Event must have application_id")
    if event.level not in LOG_LEVELS:
        raise ValueError(f"Invalid event level: {event.level}")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[ApplicationEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Forwards events to the standard logger."""

    _LEVELS = {
        "system": logging.DEBUG,
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def emit(self, events: Iterable[ApplicationEvent]) -> None:
        for event in events:
            _validate(event)
            logger.log(
                self._LEVELS[event.level],
                f"[{event.application_id}] {event.message}",
            )


class InMemoryLogStream(EventEmitter):
    """
    Keeps an ordered, bounded event history per application.

    Consumed by the API to stream run logs to the dashboard.
    """

    def __init__(self, max_events_per_application: int = 1000):
        self._max = max_events_per_application
        self._events: Dict[str, Deque[ApplicationEvent]] = defaultdict(
            lambda: deque(maxlen=self._max)
        )
        self._lock = Lock()

    def emit(self, events: Iterable[ApplicationEvent]) -> None:
        for event in events:
            _validate(event)
            with self._lock:
                self._events[event.application_id].append(event)

    def events_for(self, application_id: str) -> List[ApplicationEvent]:
        with self._lock:
            return list(self._events.get(application_id, ()))

    def clear(self, application_id: str) -> None:
        with self._lock:
            self._events.pop(application_id, None)


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[ApplicationEvent]) -> None:
        """Emit to all emitters."""
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[ApplicationEvent]) -> None:
        """Do nothing."""
        pass
