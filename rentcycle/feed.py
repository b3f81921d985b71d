"""
Observer synchronization.

Every process showing a rental keeps its *own* cached copy and a
subscription to that rental's change feed. When the processor commits a
transition it publishes one TransitionCommitted event; each subscriber
marks its copy stale and re-reads the authoritative record from the
store. Observers never patch their copy from the event payload, so they
can never drift from what the guards evaluated.

    processor ──commit──▶ ChangeFeed.publish ──▶ EventBus
                                                 │ filter: record_id
                          ┌──────────────────────┼──────────────────────┐
                          ▼                      ▼                      ▼
                     RecordView A           RecordView B          callback C
                  (requester's view)     (provider's view)      (dashboard)
                          │                      │
                          └──── store.get_rental(record_id) ────┘
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from rentcycle.errors import NotFound
from rentcycle.events import Event, EventBus, TransitionCommitted
from rentcycle.models import RentalRecord
from rentcycle.observability import Layer, get_logger

log = get_logger("feed", Layer.FEED)

ChangeCallback = Callable[[Dict[str, str]], None]


class Subscription:
    """
    A live interest in one record's changes.

    Close it (or leave the ``with`` block) when the record is no longer
    shown; the feed forgets records nobody watches.
    """

    def __init__(self, feed: "ChangeFeed", record_id: str, handler: Callable[[Event], None]):
        self.feed = feed
        self.record_id = record_id
        self._handler = handler
        self._closed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ChangeFeed:
    """Per-record change feed on top of the event bus."""

    def __init__(self, bus: Optional[EventBus] = None, async_delivery: bool = False):
        self.bus = bus or EventBus()
        self.async_delivery = async_delivery
        self._lock = threading.Lock()
        self._counts: Counter = Counter()
        self._subscriptions: List[Subscription] = []

    def publish(self, event: TransitionCommitted) -> None:
        self.bus.publish(event)

    def subscribe(self, record_id: str, callback: ChangeCallback) -> Subscription:
        """
        Call ``callback(payload)`` for every committed transition of record_id.

        The payload is ``{record_id, old_status, new_status, at}``.
        """
        subscription: Optional[Subscription] = None

        def handler(event: Event) -> None:
            if subscription is None or subscription.closed:
                return
            subscription.delivered += 1
            callback(event.payload())  # type: ignore[attr-defined]

        subscription = Subscription(self, record_id, handler)
        self.bus.add_handler(
            handler,
            TransitionCommitted,
            filter_func=lambda e: getattr(e, "record_id", None) == record_id,
            async_handler=self.async_delivery,
        )
        with self._lock:
            self._counts[record_id] += 1
            self._subscriptions.append(subscription)
        log.debug("Subscribed to record", record_id=record_id)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self.bus.unsubscribe(subscription._handler)
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            self._counts[subscription.record_id] -= 1
            if self._counts[subscription.record_id] <= 0:
                del self._counts[subscription.record_id]
        log.debug("Unsubscribed from record", record_id=subscription.record_id)

    def subscriber_count(self, record_id: str) -> int:
        with self._lock:
            return self._counts.get(record_id, 0)

    def watched_records(self) -> List[str]:
        with self._lock:
            return sorted(self._counts)

    def close(self) -> None:
        """Tear down every open subscription."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()


class RecordView:
    """
    One observer's cached copy of a rental.

    Example:
        with RecordView(feed, store, "rental-1") as view:
            render(view.record)
            ...
            render(view.record)  # re-fetched if a transition happened
    """

    def __init__(
        self,
        feed: ChangeFeed,
        store: Any,
        record_id: str,
        on_refresh: Optional[Callable[[RentalRecord], None]] = None,
    ):
        self.record_id = record_id
        self._store = store
        self._on_refresh = on_refresh
        self._lock = threading.Lock()
        self._stale = False
        self.refresh_count = 0
        self.last_change: Optional[Dict[str, str]] = None
        self._record = self._fetch()
        self._subscription = feed.subscribe(record_id, self._invalidate)

    def _fetch(self) -> RentalRecord:
        record = self._store.get_rental(self.record_id)
        if record is None:
            raise NotFound(self.record_id)
        return record

    def _invalidate(self, payload: Dict[str, str]) -> None:
        with self._lock:
            self._stale = True
            self.last_change = dict(payload)
        self.refresh()

    def refresh(self) -> RentalRecord:
        """Re-read the authoritative record from the store."""
        record = self._fetch()
        with self._lock:
            self._record = record
            self._stale = False
            self.refresh_count += 1
        if self._on_refresh:
            self._on_refresh(record)
        return record

    @property
    def stale(self) -> bool:
        with self._lock:
            return self._stale

    @property
    def record(self) -> RentalRecord:
        """The cached copy, re-fetched first if it was invalidated."""
        if self.stale:
            return self.refresh()
        with self._lock:
            return self._record

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    def close(self) -> None:
        self._subscription.close()

    def __enter__(self) -> "RecordView":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
