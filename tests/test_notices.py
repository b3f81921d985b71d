"""
Notice catalogue and dispatcher tests.

Delivery is best effort: a failing channel never blocks or rolls back a
transition; it shows up as deferred work that is retried and, after
the last attempt, dead-lettered.

Run with: pytest tests/test_notices.py -v
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import PROVIDER, REQUESTER
from rentcycle.events import NoticeDeadLettered
from rentcycle.models import RentalRecord
from rentcycle.notices import (
    LoggingNoticeSink,
    NoticeDispatcher,
    NoticePriority,
    build_notices,
)
from rentcycle.resilience import BackoffStrategy, CircuitBreaker, CircuitState, RetryPolicy
from rentcycle.states import Command, RentalStatus

AT = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def record() -> RentalRecord:
    return RentalRecord(
        id="rental-1",
        status=RentalStatus.PENDING,
        requester_id=REQUESTER,
        provider_id=PROVIDER,
        item_id="item-1",
        start_date=datetime(2026, 6, 10).date(),
        end_date=datetime(2026, 6, 15).date(),
        status_updated_at=AT,
        created_at=AT,
    )


def _notices(record, command=Command.CANCEL, status=RentalStatus.CANCELLED, seq=1):
    return build_notices(record, command, status, seq, AT, {"command": command.value})


class TestCatalogue:
    """Which transitions notify whom."""

    def test_one_notice_per_party(self, record):
        notices = _notices(record)
        assert [(n.recipient_id, n.recipient_role) for n in notices] == [
            (REQUESTER, "requester"),
            (PROVIDER, "provider"),
        ]
        assert [n.id for n in notices] == [
            "notice-rental-1-1-requester",
            "notice-rental-1-1-provider",
        ]
        assert notices[0].data == {"command": "cancel", "new_status": "cancelled"}

    @pytest.mark.parametrize("command,status,kind", [
        (Command.COMPLETE_PAYMENT, RentalStatus.PAID, "booking_confirmed"),
        (Command.PROMOTE_TO_PICKUP, RentalStatus.AWAITING_PICKUP_INSPECTION, "pickup_inspection_required"),
        (Command.COMPLETE_PICKUP_INSPECTION, RentalStatus.AWAITING_START_DATE, "pickup_inspection_completed"),
        (Command.START_RENTAL, RentalStatus.ACTIVE, "rental_started"),
        (Command.INITIATE_RETURN, RentalStatus.AWAITING_RETURN_INSPECTION, "return_initiated"),
        (Command.COMPLETE_RETURN_INSPECTION, RentalStatus.PENDING_REVIEW, "return_ready_for_review"),
        (Command.CONFIRM_COMPLETION, RentalStatus.COMPLETED, "booking_completed"),
        (Command.REPORT_DAMAGE, RentalStatus.DISPUTED, "damage_claim_filed"),
        (Command.RESOLVE_DISPUTE, RentalStatus.COMPLETED, "dispute_resolved"),
        (Command.DECLINE, RentalStatus.DECLINED, "booking_declined"),
    ])
    def test_every_transition_has_a_notice(self, record, command, status, kind):
        assert {n.kind for n in _notices(record, command, status)} == {kind}

    def test_unknown_pair_is_silent(self, record):
        assert _notices(record, Command.CANCEL, RentalStatus.ACTIVE) == []

    def test_damage_claims_are_critical(self, record):
        notices = _notices(record, Command.REPORT_DAMAGE, RentalStatus.DISPUTED)
        assert {n.priority for n in notices} == {NoticePriority.CRITICAL}

    def test_serializes(self, record):
        data = _notices(record)[0].to_dict()
        assert data["priority"] == "high"
        assert data["created_at"].endswith("Z")


class TestDispatch:
    """The single inline attempt."""

    def test_delivered_inline(self, dispatcher, sink, record):
        assert dispatcher.dispatch(_notices(record)) == []
        assert len(sink.delivered) == 2
        assert dispatcher.metrics == {"delivered": 2, "pending": 0, "dead_lettered": 0}

    def test_failure_is_deferred(self, dispatcher, sink, record):
        sink.fail_always = True
        deferred = dispatcher.dispatch(_notices(record))
        assert [d.notice_id for d in deferred] == [
            "notice-rental-1-1-requester",
            "notice-rental-1-1-provider",
        ]
        assert all(d.kind == "notice" for d in deferred)
        assert "ConnectionError" in deferred[0].reason
        assert [p.attempts for p in dispatcher.pending] == [1, 1]

    def test_transition_commits_while_channel_is_down(self, lifecycle, sink, store):
        sink.fail_always = True
        record = lifecycle.create()
        result = lifecycle.attempt(record.id, Command.CANCEL, REQUESTER)
        assert store.get_rental(record.id).status == RentalStatus.CANCELLED
        assert len(result.deferred) == 2
        assert result.to_dict()["deferred"][0]["record_id"] == record.id

    def test_non_retryable_error_dead_letters_at_once(self, sink, clock, record):
        letters = []
        dispatcher = NoticeDispatcher(
            sink,
            retry_policy=RetryPolicy(max_attempts=5, non_retryable_exceptions=(ConnectionError,)),
            clock=clock,
            on_dead_letter=letters.append,
        )
        sink.fail_always = True
        deferred = dispatcher.dispatch(_notices(record))
        assert len(deferred) == 2
        assert dispatcher.pending == []
        assert [l.attempts for l in letters] == [1, 1]


class TestRetries:
    """drain() and its schedule."""

    def test_retry_succeeds(self, dispatcher, sink, record):
        sink.fail_next = 2
        dispatcher.dispatch(_notices(record))
        report = dispatcher.drain(ignore_schedule=True)
        assert report.to_dict() == {"delivered": 2, "rescheduled": 0, "dead_lettered": 0}
        assert dispatcher.pending == []
        assert len(sink.delivered) == 2

    def test_backoff_is_respected(self, dispatcher, sink, clock, record):
        sink.fail_next = 1
        dispatcher.dispatch(_notices(record)[:1])

        assert dispatcher.drain().delivered == 0
        clock.advance(seconds=1)
        assert dispatcher.drain().delivered == 1

    def test_dead_letter_after_last_attempt(self, sink, clock, bus, record):
        letters = []
        published = []
        bus.add_handler(published.append, NoticeDeadLettered)
        dispatcher = NoticeDispatcher(
            sink,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0,
                                     backoff_strategy=BackoffStrategy.EXPONENTIAL),
            breaker=CircuitBreaker("notices", failure_threshold=100, clock=clock),
            clock=clock,
            on_dead_letter=letters.append,
            bus=bus,
        )
        sink.fail_always = True
        dispatcher.dispatch(_notices(record)[:1])

        assert dispatcher.drain(ignore_schedule=True).rescheduled == 1
        assert dispatcher.pending[0].attempts == 2
        assert dispatcher.drain(ignore_schedule=True).dead_lettered == 1

        assert dispatcher.pending == []
        (letter,) = dispatcher.dead_letters
        assert letter.attempts == 3
        assert letters == [letter]
        assert "after 3 attempts" in letter.to_dict()["error"]
        assert [e.notice_id for e in published] == ["notice-rental-1-1-requester"]
        assert published[0].attempts == 3
        assert sink.failures == 3

    def test_exponential_schedule(self, dispatcher, sink, clock, record):
        sink.fail_always = True
        dispatcher.dispatch(_notices(record)[:1])
        assert dispatcher.pending[0].next_attempt_at == clock() + timedelta(seconds=1)
        clock.advance(seconds=1)
        dispatcher.drain()
        # second retry waits 2s after the failed first retry
        assert (dispatcher.pending[0].next_attempt_at - clock()).total_seconds() == 2.0


class TestCircuitBreaker:
    """An open breaker reschedules without using up attempts."""

    def test_open_breaker_reschedules(self, sink, clock, record):
        breaker = CircuitBreaker("notices", failure_threshold=1, timeout_seconds=30, clock=clock)
        dispatcher = NoticeDispatcher(
            sink,
            retry_policy=RetryPolicy(max_attempts=2, base_delay_seconds=1.0,
                                     backoff_strategy=BackoffStrategy.FIXED),
            breaker=breaker,
            clock=clock,
        )
        sink.fail_next = 1
        deferred = dispatcher.dispatch(_notices(record))
        assert len(deferred) == 2
        assert breaker.state == CircuitState.OPEN
        assert sink.failures == 1

        report = dispatcher.drain(ignore_schedule=True)
        assert report.rescheduled == 2
        assert [p.attempts for p in dispatcher.pending] == [1, 1]
        assert dispatcher.dead_letters == []

        clock.advance(seconds=31)
        report = dispatcher.drain()
        assert report.delivered == 2
        assert breaker.state == CircuitState.CLOSED
        assert len(sink.delivered) == 2


class TestWorker:
    """Background retry thread."""

    def test_worker_drains_queue(self, dispatcher, sink, clock, record):
        sink.fail_next = 2
        dispatcher.dispatch(_notices(record))
        clock.advance(seconds=5)

        dispatcher.start(poll_interval=0.01)
        try:
            deadline = time.monotonic() + 5
            while dispatcher.pending:
                assert time.monotonic() < deadline, "retry worker never drained"
                time.sleep(0.01)
        finally:
            dispatcher.stop()
        assert len(sink.delivered) == 2


def test_logging_sink_accepts_notices(record):
    for notice in _notices(record):
        LoggingNoticeSink().deliver(notice)
