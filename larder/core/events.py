"""
Event Bus for Larder.

This module provides a simple pub/sub event system used as the notification
sink of the store: UI or CLI code subscribes and tells the user when an open,
write, export or import finished or failed.

Event types:
- database.opened: Database opened (and migrated if needed)
- database.open_failed: The engine refused the connection
- store.write_failed: A single-record write or delete failed
- snapshot.exported: Snapshot written to file
- snapshot.export_failed: Snapshot could not be written
- snapshot.imported: Snapshot restored (possibly with record failures)
- snapshot.import_failed: Snapshot could not be read, parsed or committed
- snapshot.record_failed: One record of a snapshot could not be added

Usage:
    from larder.core.events import event_bus

    async def on_export(event: SnapshotExportedEvent) -> None:
        print(f"Exported to {event.path}")

    await event_bus.subscribe("snapshot.exported", on_export)
    await event_bus.subscribe("snapshot.*", on_any_snapshot_event)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[["Event"], Coroutine[Any, Any, None]]


@dataclass
class Event:
    """Base class for all events."""

    event_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {"type": self.event_type}


@dataclass
class DatabaseOpenedEvent(Event):
    """Fired when a database is open and its schema is current."""

    event_type: str = field(default="database.opened", init=False)
    path: str = ""
    version: int = 0
    previous_version: int = 0

    @property
    def upgraded(self) -> bool:
        return self.previous_version != self.version

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "path": self.path,
            "version": self.version,
            "previous_version": self.previous_version,
        }


@dataclass
class DatabaseOpenFailedEvent(Event):
    """Fired when the database cannot be opened; it must not be used."""

    event_type: str = field(default="database.open_failed", init=False)
    path: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "path": self.path, "error": self.error}


@dataclass
class WriteFailedEvent(Event):
    """Fired when an upsert, update or delete fails."""

    event_type: str = field(default="store.write_failed", init=False)
    collection: str = ""
    operation: str = ""  # upsert, update, delete
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "collection": self.collection,
            "operation": self.operation,
            "error": self.error,
        }


@dataclass
class SnapshotExportedEvent(Event):
    """Fired after a snapshot file was written."""

    event_type: str = field(default="snapshot.exported", init=False)
    path: str = ""
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "path": self.path, "counts": dict(self.counts)}


@dataclass
class SnapshotExportFailedEvent(Event):
    event_type: str = field(default="snapshot.export_failed", init=False)
    path: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "path": self.path, "error": self.error}


@dataclass
class SnapshotImportedEvent(Event):
    """Fired once every non-empty collection of a snapshot was processed."""

    event_type: str = field(default="snapshot.imported", init=False)
    path: str = ""
    added: dict[str, int] = field(default_factory=dict)
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "path": self.path,
            "added": dict(self.added),
            "failed": self.failed,
        }


@dataclass
class SnapshotImportFailedEvent(Event):
    event_type: str = field(default="snapshot.import_failed", init=False)
    path: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "path": self.path, "error": self.error}


@dataclass
class SnapshotRecordFailedEvent(Event):
    """Fired for each snapshot record that could not be added."""

    event_type: str = field(default="snapshot.record_failed", init=False)
    collection: str = ""
    index: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "collection": self.collection,
            "index": self.index,
            "error": self.error,
        }


def topic_matches(pattern: str, event_type: str) -> bool:
    """
    Match a subscription pattern against an event type.

    "*" matches everything, "snapshot.*" matches every "snapshot.<x>" type, any
    other pattern must equal the event type.
    """
    if pattern == "*" or pattern == event_type:
        return True
    return pattern.endswith(".*") and event_type.startswith(pattern[:-1])


class EventBus:
    """
    Notification sink for store events.

    Handlers are async callables keyed by a topic pattern (see
    `topic_matches`). They run one after another in subscription order; an
    exception in one handler is logged and does not reach the publisher or the
    remaining handlers, so a broken notification can never fail a store
    operation.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, pattern: str, handler: EventHandler) -> None:
        async with self._lock:
            self._subscriptions.setdefault(pattern, []).append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), pattern)

    async def unsubscribe(self, pattern: str, handler: EventHandler) -> bool:
        """Remove one subscription. Returns False if it was not registered."""
        async with self._lock:
            handlers = self._subscriptions.get(pattern, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._subscriptions[pattern]
        return True

    async def handlers_for(self, event_type: str) -> list[EventHandler]:
        """Snapshot of the handlers an event of `event_type` would reach."""
        async with self._lock:
            return [
                handler
                for pattern, handlers in self._subscriptions.items()
                if topic_matches(pattern, event_type)
                for handler in handlers
            ]

    async def publish(self, event: Event) -> int:
        """Deliver `event`; returns how many handlers completed without error."""
        delivered = 0
        # Handlers may (un)subscribe, so they run outside the lock.
        for handler in await self.handlers_for(event.event_type):
            try:
                await handler(event)
            except Exception:
                logger.exception("Notification handler failed for %s", event.event_type)
            else:
                delivered += 1

        logger.debug("%s delivered to %d handler(s)", event.event_type, delivered)
        return delivered

    async def clear(self) -> None:
        async with self._lock:
            self._subscriptions.clear()


# Process-wide bus for callers that do not pass their own.
event_bus = EventBus()
