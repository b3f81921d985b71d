"""
Rentcycle Event Infrastructure

Typed in-process event bus used to tell observers that a rental changed.

Design Principles
─────────────────

    Immutable Events: Events are facts about committed transitions. They
    are published only after the store has committed.

    Notify, don't replicate: an event says *that* a record changed. Readers
    re-fetch the record instead of applying the event to a cached copy.

    Idempotency: Handlers may see the same record change more than once
    (for example a sync delivery plus a manual refresh) and must cope.

Usage
─────

    bus = EventBus()

    @bus.subscribe(TransitionCommitted)
    def on_change(event: TransitionCommitted):
        print(f"{event.record_id}: {event.old_status} -> {event.new_status}")

    bus.publish(TransitionCommitted(record_id="rental-1", ...))
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events in the system.

    Each event has a unique ID, timestamp, and optional metadata.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


@dataclass
class TransitionCommitted(Event):
    """Emitted once per successful status change, after commit."""
    record_id: str = ""
    old_status: str = ""
    new_status: str = ""
    at: str = ""
    command: str = ""
    seq: int = 0

    def payload(self) -> Dict[str, str]:
        """The change-feed payload seen by subscribers."""
        return {
            "record_id": self.record_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "at": self.at,
        }


@dataclass
class NoticeDeadLettered(Event):
    """Emitted when a notice could not be delivered after all retries."""
    notice_id: str = ""
    record_id: str = ""
    recipient_id: str = ""
    attempts: int = 0
    last_error: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT HANDLER
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None
    async_handler: bool = False


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


def _log_handler_error(error: EventHandlerError) -> None:
    logger.error("%s", error, exc_info=(type(error.cause), error.cause, error.cause.__traceback__))


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Supports typed subscriptions, filters, priorities, and async processing.
    Thread-safe for concurrent publishing and subscribing. A failing handler
    never affects the publisher or other handlers; the error goes to
    ``on_error`` (logged by default).

    Example:
        bus = EventBus()

        @bus.subscribe(TransitionCommitted)
        def handle(event):
            print(f"Transition: {event.record_id}")

        bus.publish(TransitionCommitted(record_id="rental-1"))
    """

    def __init__(
        self,
        async_queue_size: int = 1000,
        poll_interval: float = 0.1,
        on_error: Optional[Callable[[EventHandlerError], None]] = None,
    ):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._async_queue: queue.Queue = queue.Queue(maxsize=async_queue_size)
        self._async_worker: Optional[threading.Thread] = None
        self._running = False
        self._poll_interval = poll_interval
        self._on_error = on_error or _log_handler_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
        async_handler: bool = False,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        Args:
            event_types: Event types to subscribe to
            priority: Handler priority (higher = earlier)
            filter_func: Optional filter function
            async_handler: Process on the background worker
        """
        def decorator(handler: EventHandler) -> EventHandler:
            self.add_handler(
                handler,
                *event_types,
                priority=priority,
                filter_func=filter_func,
                async_handler=async_handler,
            )
            return handler
        return decorator

    def add_handler(
        self,
        handler: EventHandler,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
        async_handler: bool = False,
    ) -> EventHandlerRegistration:
        """Non-decorator form of subscribe, returning the registration."""
        registration = EventHandlerRegistration(
            handler=handler,
            event_types=set(event_types) if event_types else {Event},
            priority=priority,
            filter_func=filter_func,
            async_handler=async_handler,
        )
        with self._lock:
            self._handlers.append(registration)
            self._handlers.sort(key=lambda r: -r.priority)
        return registration

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Unsubscribe a handler."""
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler is not handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """
        Publish an event to all subscribers.

        Synchronous handlers are called immediately in priority order.
        Async handlers are queued for the background worker; when the worker
        is not running or the queue is full they run inline.
        """
        with self._lock:
            self._published_count += 1
            handlers_to_call = []

            for registration in self._handlers:
                if not any(isinstance(event, t) for t in registration.event_types):
                    continue
                if registration.filter_func and not registration.filter_func(event):
                    continue
                handlers_to_call.append(registration)

        for registration in handlers_to_call:
            if registration.async_handler and self._running:
                try:
                    self._async_queue.put_nowait((registration.handler, event))
                    continue
                except queue.Full:
                    logger.warning("Event queue full, delivering %s inline", event.event_type)
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            self._on_error(EventHandlerError(event, handler, e))

    def start_async_processing(self) -> None:
        """Start background thread for async handlers."""
        if self._running:
            return

        self._running = True
        self._async_worker = threading.Thread(
            target=self._async_processor,
            daemon=True,
            name="rentcycle-event-bus",
        )
        self._async_worker.start()

    def stop_async_processing(self, timeout: float = 5.0) -> None:
        """Stop background processing after draining queued events."""
        self.flush(timeout)
        self._running = False
        if self._async_worker:
            self._async_worker.join(timeout=timeout)
            self._async_worker = None

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued async events have been handled."""
        done = threading.Event()

        def waiter() -> None:
            self._async_queue.join()
            done.set()

        threading.Thread(target=waiter, daemon=True).start()
        return done.wait(timeout)

    def _async_processor(self) -> None:
        while self._running:
            try:
                handler, event = self._async_queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            try:
                self._call_handler(handler, event)
            finally:
                self._async_queue.task_done()

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
                "async_queue_size": self._async_queue.qsize(),
            }


__all__ = [
    "Event",
    "TransitionCommitted",
    "NoticeDeadLettered",
    "EventHandler",
    "EventHandlerRegistration",
    "EventHandlerError",
    "EventBus",
]
