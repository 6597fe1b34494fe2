"""In-memory event bus for the settlement workers and tests.

Handlers run synchronously after the publishing transaction has committed.
A failing handler never propagates back to the publisher; the event is parked
in the dead letter queue instead.
"""

import threading
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ...shared.events.event_bus import EventBus, EventHandler
from ...shared.kernel.events import DomainEvent

logger = structlog.get_logger()


class InMemoryEventStore:
    """In-memory event store for inspection and debugging."""

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self.events: List[DomainEvent] = []
        self.events_by_type: Dict[str, List[DomainEvent]] = {}

    def store_event(self, event: DomainEvent) -> None:
        """Store event in memory."""
        self.events.append(event)
        self.events_by_type.setdefault(event.event_type, []).append(event)

        if len(self.events) > self.max_events:
            self._cleanup_old_events()

    def _cleanup_old_events(self) -> None:
        """Remove oldest 10% of events to maintain size limit."""
        remove_count = self.max_events // 10
        removed_ids = {event.event_id for event in self.events[:remove_count]}
        self.events = self.events[remove_count:]

        for event_type, type_events in self.events_by_type.items():
            self.events_by_type[event_type] = [
                e for e in type_events if e.event_id not in removed_ids
            ]

    def get_events_by_type(self, event_type: str) -> List[DomainEvent]:
        """Get all events of specific type."""
        return list(self.events_by_type.get(event_type, []))

    def get_events_by_aggregate(self, aggregate_id: UUID) -> List[DomainEvent]:
        """Get all events for specific aggregate."""
        return [event for event in self.events if event.aggregate_id == aggregate_id]

    def get_all_events(self) -> List[DomainEvent]:
        """Get all stored events."""
        return list(self.events)


class InMemoryEventBus(EventBus):
    """Synchronous in-memory event bus."""

    def __init__(self, enable_event_store: bool = True):
        self.subscriptions: Dict[str, List[EventHandler]] = {}
        self.event_store = InMemoryEventStore() if enable_event_store else None
        self.dead_letter_queue: List[Tuple[DomainEvent, Exception]] = []
        self.events_published = 0
        self.events_failed = 0
        # Orchestrator workers may publish from several threads
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to event type with handler."""
        with self._lock:
            self.subscriptions.setdefault(event_type, []).append(handler)

        logger.info(
            "Handler subscribed to event type",
            event_type=event_type,
            handler=type(handler).__name__,
        )

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe handler from event type."""
        with self._lock:
            handlers = [h for h in self.subscriptions.get(event_type, []) if h is not handler]
            if handlers:
                self.subscriptions[event_type] = handlers
            else:
                self.subscriptions.pop(event_type, None)

    def publish(self, event: DomainEvent) -> None:
        """Publish single event to subscribers."""
        with self._lock:
            if self.event_store:
                self.event_store.store_event(event)
            self.events_published += 1
            handlers = list(self.subscriptions.get(event.event_type, []))

        if not handlers:
            logger.debug(
                "No subscribers for event",
                event_type=event.event_type,
                event_id=str(event.event_id),
            )
            return

        for handler in handlers:
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
            except Exception as e:
                self._send_to_dead_letter_queue(event, handler, e)

    def publish_batch(self, events: List[DomainEvent]) -> None:
        """Publish multiple events, preserving order."""
        for event in events:
            self.publish(event)

    def _send_to_dead_letter_queue(
        self,
        event: DomainEvent,
        handler: EventHandler,
        exception: Exception,
    ) -> None:
        """Park a failed delivery."""
        logger.error(
            "Event handler failed",
            event_type=event.event_type,
            event_id=str(event.event_id),
            handler=type(handler).__name__,
            error=str(exception),
        )
        with self._lock:
            self.events_failed += 1
            self.dead_letter_queue.append((event, exception))
            if len(self.dead_letter_queue) > 1000:
                self.dead_letter_queue = self.dead_letter_queue[-500:]

    def get_dead_letter_queue(self) -> List[Tuple[DomainEvent, Exception]]:
        """Get dead letter queue contents."""
        return list(self.dead_letter_queue)

    def published(self, event_type: Optional[str] = None) -> List[DomainEvent]:
        """Events seen by the bus, optionally filtered by type."""
        if not self.event_store:
            return []
        if event_type:
            return self.event_store.get_events_by_type(event_type)
        return self.event_store.get_all_events()
