"""
Scheduled activator tests.

Run with: pytest tests/test_activator.py -v
"""

import time
from datetime import date, datetime, timezone

import pytest

from conftest import REQUESTER, SYSTEM
from rentcycle.activator import ScheduledActivator
from rentcycle.errors import StoreError
from rentcycle.models import Actor
from rentcycle.states import Command, RentalStatus


@pytest.fixture
def activator(processor) -> ScheduledActivator:
    return ScheduledActivator(processor, interval_seconds=0.01)


class TestSweep:
    """One run_once pass."""

    def test_activates_only_due_rentals(self, lifecycle, activator, store, clock):
        due = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        later = lifecycle.to_status(
            RentalStatus.AWAITING_START_DATE, start=date(2026, 7, 1), end=date(2026, 7, 3)
        )

        clock.set(datetime(2026, 6, 10, 0, 0, tzinfo=timezone.utc))
        report = activator.run_once()

        assert report.activated == [due.id]
        assert report.examined == 1
        assert store.get_rental(due.id).status == RentalStatus.ACTIVE
        assert store.get_rental(later.id).status == RentalStatus.AWAITING_START_DATE
        assert activator.last_report is report

    def test_acts_as_system(self, lifecycle, activator, store, clock):
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))
        activator.run_once()
        event = store.list_events(record.id)[-1]
        assert event.command == Command.START_RENTAL.value
        assert event.actor_id == SYSTEM

    def test_second_sweep_is_noop(self, lifecycle, activator, store, sink, clock):
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))
        activator.run_once()
        events = len(store.list_events(record.id))
        notices = len(sink.delivered)

        report = activator.run_once()
        assert report.activated == []
        assert len(store.list_events(record.id)) == events
        assert len(sink.delivered) == notices

    def test_stale_scan_counts_as_already_applied(
        self, lifecycle, activator, store, sink, clock, monkeypatch
    ):
        """A record started by someone else between scan and command is skipped."""
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))
        stale = store.get_rental(record.id)
        lifecycle.attempt(record.id, Command.START_RENTAL, REQUESTER)
        events = len(store.list_events(record.id))
        ledger = len(store.list_ledger(record.id))
        notices = len(sink.delivered)

        monkeypatch.setattr(store, "list_due_for_activation", lambda today, limit=1000: [stale])
        report = activator.run_once()

        assert report.activated == []
        assert report.already_applied == [record.id]
        assert report.failed == {}
        assert len(store.list_events(record.id)) == events
        assert len(store.list_ledger(record.id)) == ledger
        assert len(sink.delivered) == notices

    def test_refused_guard_lands_in_failed(self, lifecycle, processor, store, clock):
        """A scan clock ahead of the processor's selects a record the guard still refuses."""
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        assert clock() < datetime(2026, 6, 10, tzinfo=timezone.utc)

        ahead = ScheduledActivator(
            processor, clock=lambda: datetime(2026, 6, 10, 1, 0, tzinfo=timezone.utc)
        )
        report = ahead.run_once()

        assert report.activated == []
        assert report.already_applied == []
        assert list(report.failed) == [record.id]
        assert "start date" in report.failed[record.id]
        assert store.get_rental(record.id).status == RentalStatus.AWAITING_START_DATE

    def test_sweeps_records_left_in_paid(self, lifecycle, processor, store):
        processor.auto_promote = False
        record = lifecycle.create()
        lifecycle.pay(record)
        assert store.get_rental(record.id).status == RentalStatus.PAID

        report = ScheduledActivator(processor, sweep_paid=True).run_once()
        assert report.promoted == [record.id]
        assert store.get_rental(record.id).status == RentalStatus.AWAITING_PICKUP_INSPECTION

    def test_paid_sweep_can_be_disabled(self, lifecycle, processor, store, config):
        config.scheduler.sweep_paid.set(False)
        processor.auto_promote = False
        record = lifecycle.create()
        lifecycle.pay(record)

        report = ScheduledActivator(processor).run_once()
        assert report.promoted == []
        assert store.get_rental(record.id).status == RentalStatus.PAID

    def test_store_failure_lands_in_failed(self, lifecycle, activator, processor, clock, monkeypatch):
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))

        def broken(record_id, command, actor, payload=None):
            raise StoreError("database is locked")

        monkeypatch.setattr(processor, "attempt", broken)
        report = activator.run_once()
        assert report.failed == {record.id: "database is locked"}
        assert report.activated == []

    def test_custom_actor(self, lifecycle, processor, store, config, clock):
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        config.auth.system_actor_id.set("system:cron")
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))
        ScheduledActivator(processor, actor=Actor("system:cron")).run_once()
        assert store.list_events(record.id)[-1].actor_id == "system:cron"

    def test_report_serializes(self, activator):
        data = activator.run_once().to_dict()
        assert set(data) == {
            "started_at", "examined", "activated", "promoted", "already_applied", "failed",
        }


class TestBackgroundLoop:
    """start / stop."""

    def test_start_and_stop(self, lifecycle, activator, store, clock):
        record = lifecycle.to_status(RentalStatus.AWAITING_START_DATE)
        clock.set(datetime(2026, 6, 10, 6, 0, tzinfo=timezone.utc))

        activator.start()
        try:
            assert activator.running
            deadline = time.monotonic() + 5
            while store.get_rental(record.id).status != RentalStatus.ACTIVE:
                assert time.monotonic() < deadline, "activator never ran"
                time.sleep(0.01)
        finally:
            activator.stop()
        assert not activator.running

    def test_start_twice_keeps_one_thread(self, activator):
        activator.start()
        try:
            first = activator._thread
            activator.start()
            assert activator._thread is first
        finally:
            activator.stop()
