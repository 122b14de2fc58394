"""Event emitters for deployment and node lifecycle."""

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Iterable, List

from node_deployer.core.events_model import DeployerEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "deployment.created",
    "deployment.status_changed",
    "deployment.scaled",
    "deployment.delete_deferred",
    "deployment.deleted",
    "deployment.health_signal",
    "node.registered",
    "node.status_changed",
    "node.deleted",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeployerEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Logs events and keeps them in memory for inspection."""

    def __init__(self):
        self.events: List[DeployerEvent] = []
        self._lock = Lock()

    def emit(self, events: Iterable[DeployerEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            if not event.subject_id:
                raise ValueError("Event must have subject_id")

            with self._lock:
                self.events.append(event)

            logger.info(f"[event] {event.event_type} | subject={event.subject_id} | {event.metadata}")

    def of_type(self, event_type: str) -> List[DeployerEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeployerEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[DeployerEvent]) -> None:
        pass
