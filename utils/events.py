"""
Structured store events.

Stores, transactions, the buffer pipeline and the GeoJSON bridge report what
they do through an injected event sink instead of module-level state. The
default sink forwards every event to the project logger; tests and embedding
applications can pass their own sink.

Event naming convention:
    <component>.<action>   e.g. dataset.opened, transaction.committed

Classes:
    StoreEvent: Typed event names
    EventSink: Protocol every sink implements
    LoggingEventSink: Sink that writes events to the project logger
    RecordingEventSink: Sink that keeps events in memory
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from utils.logger import get_logger


class StoreEvent(str, Enum):
    """Typed event names emitted by the feature store and its collaborators."""

    DATASET_OPENED = "dataset.opened"
    DATASET_CREATED = "dataset.created"
    CRS_UNKNOWN = "crs.unknown"

    SCAN_OPENED = "scan.opened"
    SCAN_CLOSED = "scan.closed"

    TRANSACTION_BEGUN = "transaction.begun"
    TRANSACTION_COMMITTED = "transaction.committed"
    TRANSACTION_COMMIT_FAILED = "transaction.commit_failed"
    TRANSACTION_ROLLED_BACK = "transaction.rolled_back"
    TRANSACTION_CLOSED = "transaction.closed"

    BUFFER_COMPLETED = "buffer.completed"

    FIELD_RENAMED = "bridge.field_renamed"
    GEOJSON_IMPORTED = "bridge.geojson_imported"


# Events that indicate something the caller should look at
_WARNING_EVENTS = {
    StoreEvent.CRS_UNKNOWN,
    StoreEvent.TRANSACTION_COMMIT_FAILED,
    StoreEvent.FIELD_RENAMED,
}


class EventSink(Protocol):
    """Anything that accepts structured store events."""

    def emit(self, event: StoreEvent, message: str, **metadata: Any) -> None:
        ...


class LoggingEventSink:
    """
    Forward events to the project logger.

    Warning-class events (unknown CRS, failed commits, renamed fields) are
    logged at WARNING, everything else at DEBUG so that library use stays quiet
    on the console.
    """

    def __init__(self, name: str = 'events'):
        self.logger = get_logger(name)

    def emit(self, event: StoreEvent, message: str, **metadata: Any) -> None:
        level = logging.WARNING if event in _WARNING_EVENTS else logging.DEBUG
        if metadata:
            details = ", ".join(f"{key}={value}" for key, value in metadata.items())
            self.logger.log(level, f"[{event.value}] {message} ({details})")
        else:
            self.logger.log(level, f"[{event.value}] {message}")


@dataclass
class RecordedEvent:
    event: StoreEvent
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class RecordingEventSink:
    """Keep every event in memory, optionally forwarding to another sink."""

    def __init__(self, forward_to: Optional[EventSink] = None):
        self.events: List[RecordedEvent] = []
        self.forward_to = forward_to

    def emit(self, event: StoreEvent, message: str, **metadata: Any) -> None:
        self.events.append(RecordedEvent(event, message, dict(metadata)))
        if self.forward_to is not None:
            self.forward_to.emit(event, message, **metadata)

    def names(self) -> List[str]:
        return [recorded.event.value for recorded in self.events]


def default_sink(events: Optional[EventSink] = None) -> EventSink:
    """Return the given sink, or a logging sink when none was injected."""
    return events if events is not None else LoggingEventSink()
