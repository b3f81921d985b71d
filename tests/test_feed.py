"""
Change feed and observer tests.

Run with: pytest tests/test_feed.py -v
"""

from typing import Dict, List

import pytest

from conftest import PROVIDER, REQUESTER
from rentcycle.errors import GuardFailed, NotFound
from rentcycle.events import EventBus, TransitionCommitted
from rentcycle.feed import ChangeFeed, RecordView
from rentcycle.processor import TransitionProcessor
from rentcycle.states import Command, RentalStatus


class TestSubscriptions:
    """Subscribe, deliver, tear down."""

    def test_payload_shape(self, lifecycle, feed):
        record = lifecycle.create()
        received: List[Dict[str, str]] = []
        feed.subscribe(record.id, received.append)

        result = lifecycle.attempt(record.id, Command.CANCEL, REQUESTER)

        assert received == [{
            "record_id": record.id,
            "old_status": "pending",
            "new_status": "cancelled",
            "at": result.to_dict()["at"],
        }]

    def test_only_the_watched_record(self, lifecycle, feed):
        watched = lifecycle.create()
        other = lifecycle.create()
        received: List[Dict[str, str]] = []
        feed.subscribe(watched.id, received.append)

        lifecycle.attempt(other.id, Command.CANCEL, REQUESTER)
        assert received == []

    def test_one_event_per_transition(self, lifecycle, feed):
        record = lifecycle.create()
        received: List[Dict[str, str]] = []
        feed.subscribe(record.id, received.append)

        lifecycle.pay(record)
        assert [p["new_status"] for p in received] == ["paid", "awaiting_pickup_inspection"]

    def test_refused_command_publishes_nothing(self, lifecycle, feed):
        record = lifecycle.create()
        received: List[Dict[str, str]] = []
        feed.subscribe(record.id, received.append)
        with pytest.raises(GuardFailed):
            lifecycle.attempt(record.id, Command.CONFIRM_COMPLETION, PROVIDER)
        assert received == []

    def test_close_stops_delivery(self, lifecycle, feed):
        record = lifecycle.create()
        received: List[Dict[str, str]] = []
        subscription = feed.subscribe(record.id, received.append)
        assert feed.subscriber_count(record.id) == 1
        assert feed.watched_records() == [record.id]

        subscription.close()
        subscription.close()
        lifecycle.attempt(record.id, Command.CANCEL, REQUESTER)

        assert received == []
        assert subscription.closed
        assert feed.subscriber_count(record.id) == 0
        assert feed.watched_records() == []

    def test_context_manager(self, lifecycle, feed):
        record = lifecycle.create()
        with feed.subscribe(record.id, lambda payload: None) as subscription:
            lifecycle.attempt(record.id, Command.DECLINE, PROVIDER)
            assert subscription.delivered == 1
        assert feed.subscriber_count(record.id) == 0

    def test_feed_close_tears_down_everything(self, bus):
        feed = ChangeFeed(bus)
        feed.subscribe("rental-a", lambda payload: None)
        feed.subscribe("rental-a", lambda payload: None)
        feed.subscribe("rental-b", lambda payload: None)
        assert bus.metrics["handler_count"] == 3

        feed.close()
        assert feed.watched_records() == []
        assert bus.metrics["handler_count"] == 0

    def test_failing_subscriber_does_not_affect_commit(self, lifecycle, feed, store):
        record = lifecycle.create()

        def explode(payload):
            raise RuntimeError("renderer crashed")

        feed.subscribe(record.id, explode)
        result = lifecycle.attempt(record.id, Command.CANCEL, REQUESTER)
        assert result.new_status == RentalStatus.CANCELLED
        assert store.get_rental(record.id).status == RentalStatus.CANCELLED
        assert feed.bus.metrics["error_count"] == 1


class TestRecordView:
    """Observers re-read the authoritative record."""

    def test_view_refreshes_on_change(self, lifecycle, feed, store):
        record = lifecycle.create()
        refreshed = []
        view = RecordView(feed, store, record.id, on_refresh=refreshed.append)
        assert view.record.status == RentalStatus.PENDING
        assert view.refresh_count == 0

        lifecycle.pay(record)

        assert view.record.status == RentalStatus.AWAITING_PICKUP_INSPECTION
        assert view.refresh_count == 2
        assert [r.status for r in refreshed] == [
            RentalStatus.PAID,
            RentalStatus.AWAITING_PICKUP_INSPECTION,
        ]
        assert view.last_change["new_status"] == "awaiting_pickup_inspection"
        assert not view.stale
        view.close()

    def test_two_observers_agree(self, lifecycle, feed, store):
        record = lifecycle.create()
        with RecordView(feed, store, record.id) as requester_view, \
                RecordView(feed, store, record.id) as provider_view:
            assert feed.subscriber_count(record.id) == 2
            lifecycle.attempt(record.id, Command.DECLINE, PROVIDER)
            assert requester_view.record.status == RentalStatus.DECLINED
            assert provider_view.record == requester_view.record
        assert feed.subscriber_count(record.id) == 0

    def test_missing_record(self, feed, store):
        with pytest.raises(NotFound):
            RecordView(feed, store, "rental-missing")
        assert feed.watched_records() == []

    def test_view_never_patches_from_payload(self, feed, store, lifecycle):
        """A forged event only triggers a re-read; the view keeps store truth."""
        record = lifecycle.create()
        with RecordView(feed, store, record.id) as view:
            feed.publish(TransitionCommitted(
                record_id=record.id, old_status="pending", new_status="active", at="",
            ))
            assert view.refresh_count == 1
            assert view.record.status == RentalStatus.PENDING


class TestAsyncDelivery:
    """Delivery on the bus worker thread."""

    def test_async_feed(self, lifecycle, store, dispatcher, config, clock):
        bus = EventBus(poll_interval=0.01)
        bus.start_async_processing()
        feed = ChangeFeed(bus, async_delivery=True)
        processor = TransitionProcessor(
            store, feed=feed, notices=dispatcher, config=config, clock=clock
        )
        try:
            record = lifecycle.create()
            received: List[Dict[str, str]] = []
            feed.subscribe(record.id, received.append)

            processor.attempt(record.id, Command.CANCEL, REQUESTER)
            assert bus.flush(timeout=5)
            assert [p["new_status"] for p in received] == ["cancelled"]
        finally:
            feed.close()
            bus.stop_async_processing()

    def test_async_handler_runs_inline_without_worker(self, lifecycle, store, dispatcher, config, clock):
        bus = EventBus()
        feed = ChangeFeed(bus, async_delivery=True)
        processor = TransitionProcessor(
            store, feed=feed, notices=dispatcher, config=config, clock=clock
        )
        record = lifecycle.create()
        received: List[Dict[str, str]] = []
        feed.subscribe(record.id, received.append)
        processor.attempt(record.id, Command.CANCEL, REQUESTER)
        assert len(received) == 1
        feed.close()
