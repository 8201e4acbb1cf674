"""
Event stores for resumable SSE delivery.

An event store is an append-only log of broadcast events ordered by timestamp.
Clients that reconnect with ``Last-Event-ID`` are replayed every event stored
strictly after that one.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from operator import attrgetter

import anyio

from mcpkit.shared.exceptions import EventNotFoundError
from mcpkit.types import StoredEvent

logger = logging.getLogger(__name__)


class EventStore(ABC):
    """Interface for resumability support via event storage.

    Implementations must be safe for concurrent use.
    """

    @abstractmethod
    async def store_event(self, event: StoredEvent) -> StoredEvent:
        """Store an event and return it as stored."""

    @abstractmethod
    async def get_events(self, since: str | None = None) -> list[StoredEvent]:
        """Events stored strictly after ``since`` (all events when None), oldest first.

        Raises:
            EventNotFoundError: If ``since`` is not a known event id
        """

    @abstractmethod
    async def get_event(self, event_id: str) -> StoredEvent:
        """Raises EventNotFoundError for an unknown id."""

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Raises EventNotFoundError for an unknown id."""

    @abstractmethod
    async def purge_events(self, older_than: datetime) -> int:
        """Drop events stamped before ``older_than``; returns how many were dropped."""


class InMemoryEventStore(EventStore):
    """
    Simple in-memory implementation of the EventStore interface.
    Every mutation is serialized under one lock. Timestamps are made strictly
    increasing so insertion order and timestamp order agree.
    """

    def __init__(self):
        self._events: dict[str, StoredEvent] = {}
        self._lock = anyio.Lock()
        self._last_timestamp: datetime | None = None

    async def store_event(self, event: StoredEvent) -> StoredEvent:
        if not event.id:
            raise ValueError("event ID is required")

        async with self._lock:
            if self._last_timestamp is not None and event.timestamp <= self._last_timestamp:
                event = event.model_copy(update={"timestamp": self._last_timestamp + timedelta(microseconds=1)})
            self._last_timestamp = event.timestamp
            self._events[event.id] = event
        logger.debug("Stored event %s", event.id)
        return event

    async def get_events(self, since: str | None = None) -> list[StoredEvent]:
        async with self._lock:
            events = list(self._events.values())
            if since:
                anchor = self._events.get(since)
                if anchor is None:
                    logger.warning("Event ID %s not found in store", since)
                    raise EventNotFoundError(since)
                events = [event for event in events if event.timestamp > anchor.timestamp]

        return sorted(events, key=attrgetter("timestamp"))

    async def get_event(self, event_id: str) -> StoredEvent:
        async with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def delete_event(self, event_id: str) -> None:
        async with self._lock:
            if self._events.pop(event_id, None) is None:
                raise EventNotFoundError(event_id)

    async def purge_events(self, older_than: datetime) -> int:
        async with self._lock:
            stale = [event_id for event_id, event in self._events.items() if event.timestamp < older_than]
            for event_id in stale:
                del self._events[event_id]
        if stale:
            logger.debug("Purged %d events", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._events)
