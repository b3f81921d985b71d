"""
Best-effort notices to the rental parties.

Notices are built after a transition commits and handed to a sink (the
notification collaborator). Delivery never affects the command result:

    dispatch ──try once──▶ sink.deliver
        │ failure
        ▼
    retry queue ──drain / worker──▶ sink.deliver (backoff per RetryPolicy)
        │ attempts exhausted
        ▼
    dead letters ──▶ ERROR log (NOTICE_DEAD_LETTER) + on_dead_letter alert
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from rentcycle.core import format_timestamp, utc_now
from rentcycle.errors import SideEffectDeferred
from rentcycle.events import EventBus, NoticeDeadLettered
from rentcycle.models import RentalRecord
from rentcycle.observability import Layer, get_logger
from rentcycle.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    RetryExhaustedError,
    RetryPolicy,
)
from rentcycle.states import ActorRole, Command, RentalStatus

log = get_logger("dispatcher", Layer.NOTICES)


class NoticePriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Notice:
    """A message for one rental party about one transition."""
    id: str
    record_id: str
    recipient_id: str
    recipient_role: str
    kind: str
    title: str
    message: str
    priority: NoticePriority
    created_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "recipient_id": self.recipient_id,
            "recipient_role": self.recipient_role,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "created_at": format_timestamp(self.created_at),
            "data": self.data,
        }


class NoticeSink(Protocol):
    """The notification collaborator. Raise to signal a failed delivery."""

    def deliver(self, notice: Notice) -> None:
        ...


class LoggingNoticeSink:
    """Sink that records notices in the log. Used by the CLI."""

    def __init__(self):
        self._log = get_logger("sink", Layer.NOTICES)

    def deliver(self, notice: Notice) -> None:
        self._log.info(
            notice.title,
            operation="notice",
            notice_id=notice.id,
            record_id=notice.record_id,
            recipient_id=notice.recipient_id,
            priority=notice.priority.value,
        )


# =============================================================================
# CATALOGUE
# =============================================================================

# (kind, priority, title, requester message, provider message)
_Template = Tuple[str, NoticePriority, str, str, str]

_CATALOGUE: Dict[Tuple[Command, RentalStatus], _Template] = {
    (Command.COMPLETE_PAYMENT, RentalStatus.PAID): (
        "booking_confirmed", NoticePriority.HIGH, "Booking Confirmed",
        "Your payment was received and the booking is confirmed.",
        "New booking confirmed. Payment has been received.",
    ),
    (Command.PROMOTE_TO_PICKUP, RentalStatus.AWAITING_PICKUP_INSPECTION): (
        "pickup_inspection_required", NoticePriority.MEDIUM, "Pickup Inspection Required",
        "Photograph and sign the pickup inspection when you collect the item.",
        "The renter will complete a pickup inspection at handoff.",
    ),
    (Command.COMPLETE_PICKUP_INSPECTION, RentalStatus.AWAITING_START_DATE): (
        "pickup_inspection_completed", NoticePriority.MEDIUM, "Pickup Inspection Completed",
        "Pickup inspection signed. The rental starts on the start date.",
        "The renter signed the pickup inspection.",
    ),
    (Command.START_RENTAL, RentalStatus.ACTIVE): (
        "rental_started", NoticePriority.MEDIUM, "Rental Started",
        "Your rental period has started.",
        "The rental period has started.",
    ),
    (Command.INITIATE_RETURN, RentalStatus.AWAITING_RETURN_INSPECTION): (
        "return_initiated", NoticePriority.MEDIUM, "Return Initiated",
        "Complete the return inspection when you hand the item back.",
        "The renter has started the return.",
    ),
    (Command.COMPLETE_RETURN_INSPECTION, RentalStatus.PENDING_REVIEW): (
        "return_ready_for_review", NoticePriority.HIGH, "Return Ready for Review",
        "Return inspection signed. Waiting for the owner's review.",
        "The item was returned. Review the return inspection.",
    ),
    (Command.CONFIRM_COMPLETION, RentalStatus.COMPLETED): (
        "booking_completed", NoticePriority.MEDIUM, "Rental Completed",
        "The owner confirmed the return. Your deposit has been released.",
        "Rental completed. Payment has been released to you.",
    ),
    (Command.REPORT_DAMAGE, RentalStatus.DISPUTED): (
        "damage_claim_filed", NoticePriority.CRITICAL, "Damage Claim Filed",
        "The owner reported damage. The claim is under review.",
        "Your damage claim was filed and is under review.",
    ),
    (Command.RESOLVE_DISPUTE, RentalStatus.COMPLETED): (
        "dispute_resolved", NoticePriority.HIGH, "Dispute Resolved",
        "The damage claim was resolved and the rental is complete.",
        "The damage claim was resolved and the rental is complete.",
    ),
    (Command.CANCEL, RentalStatus.CANCELLED): (
        "booking_cancelled", NoticePriority.HIGH, "Booking Cancelled",
        "The booking was cancelled.",
        "The booking was cancelled.",
    ),
    (Command.DECLINE, RentalStatus.DECLINED): (
        "booking_declined", NoticePriority.HIGH, "Booking Declined",
        "The owner declined your booking request.",
        "You declined the booking request.",
    ),
}


def build_notices(
    record: RentalRecord,
    command: Command,
    new_status: RentalStatus,
    seq: int,
    at: datetime,
    data: Optional[Dict[str, Any]] = None,
) -> List[Notice]:
    """Notices for both parties about one committed transition."""
    template = _CATALOGUE.get((command, new_status))
    if template is None:
        return []
    kind, priority, title, requester_message, provider_message = template
    recipients = (
        (record.requester_id, ActorRole.REQUESTER, requester_message),
        (record.provider_id, ActorRole.PROVIDER, provider_message),
    )
    return [
        Notice(
            id=f"notice-{record.id}-{seq}-{role.value}",
            record_id=record.id,
            recipient_id=recipient_id,
            recipient_role=role.value,
            kind=kind,
            title=title,
            message=message,
            priority=priority,
            created_at=at,
            data=dict(data or {}, new_status=new_status.value),
        )
        for recipient_id, role, message in recipients
    ]


# =============================================================================
# DISPATCH
# =============================================================================

@dataclass
class PendingNotice:
    notice: Notice
    attempts: int
    next_attempt_at: datetime
    last_error: str = ""


@dataclass
class DeadLetter:
    """A notice that exhausted its retries."""
    notice: Notice
    attempts: int
    error: RetryExhaustedError
    dead_lettered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notice": self.notice.to_dict(),
            "attempts": self.attempts,
            "error": str(self.error),
            "dead_lettered_at": format_timestamp(self.dead_lettered_at),
        }


@dataclass
class DrainReport:
    delivered: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "delivered": self.delivered,
            "rescheduled": self.rescheduled,
            "dead_lettered": self.dead_lettered,
        }


class NoticeDispatcher:
    """
    Delivers notices with one inline attempt and out-of-band retries.

    ``drain()`` runs the retry queue synchronously; ``start()`` runs it on a
    daemon thread. Failures are never raised to the caller of ``dispatch``.
    """

    def __init__(
        self,
        sink: NoticeSink,
        retry_policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utc_now,
        on_dead_letter: Optional[Callable[[DeadLetter], None]] = None,
        bus: Optional[EventBus] = None,
    ):
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker("notices")
        self._clock = clock
        self._on_dead_letter = on_dead_letter
        self._bus = bus
        self._lock = threading.Lock()
        self._pending: List[PendingNotice] = []
        self._dead_letters: List[DeadLetter] = []
        self._delivered = 0
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def _deliver(self, notice: Notice) -> None:
        with self.breaker:
            self.sink.deliver(notice)

    def dispatch(self, notices: List[Notice]) -> List[SideEffectDeferred]:
        """Try each notice once; queue the failures and report them as deferred."""
        deferred: List[SideEffectDeferred] = []
        for notice in notices:
            try:
                self._deliver(notice)
            except Exception as e:
                now = self._clock()
                delay = self.retry_policy.calculate_delay(1)
                pending = PendingNotice(
                    notice=notice,
                    attempts=1,
                    next_attempt_at=now + timedelta(seconds=delay),
                    last_error=f"{type(e).__name__}: {e}",
                )
                if not self.retry_policy.should_retry(1, e):
                    self._dead_letter(pending, e)
                else:
                    with self._lock:
                        self._pending.append(pending)
                log.warning(
                    "Notice delivery deferred",
                    operation="dispatch",
                    notice_id=notice.id,
                    record_id=notice.record_id,
                    error=pending.last_error,
                    retry_in_seconds=round(delay, 3),
                )
                deferred.append(SideEffectDeferred(
                    kind="notice",
                    record_id=notice.record_id,
                    reason=pending.last_error,
                    notice_id=notice.id,
                    details={"recipient_id": notice.recipient_id},
                ))
            else:
                with self._lock:
                    self._delivered += 1
        return deferred

    def drain(self, now: Optional[datetime] = None, ignore_schedule: bool = False) -> DrainReport:
        """
        Retry queued notices that are due.

        ``ignore_schedule`` retries everything queued regardless of backoff,
        which lets tests and operators flush the queue deterministically.
        """
        now = now or self._clock()
        with self._lock:
            due = [p for p in self._pending if ignore_schedule or p.next_attempt_at <= now]
            due_ids = {id(p) for p in due}
            self._pending = [p for p in self._pending if id(p) not in due_ids]

        report = DrainReport()
        for pending in due:
            try:
                self._deliver(pending.notice)
            except CircuitBreakerError:
                # Rejected without reaching the sink; does not use up an attempt.
                pending.next_attempt_at = now + timedelta(
                    seconds=self.breaker.config.timeout_seconds
                )
                with self._lock:
                    self._pending.append(pending)
                report.rescheduled += 1
            except Exception as e:
                pending.attempts += 1
                pending.last_error = f"{type(e).__name__}: {e}"
                if self.retry_policy.should_retry(pending.attempts, e):
                    delay = self.retry_policy.calculate_delay(pending.attempts)
                    pending.next_attempt_at = now + timedelta(seconds=delay)
                    with self._lock:
                        self._pending.append(pending)
                    report.rescheduled += 1
                    log.debug(
                        "Notice retry failed",
                        notice_id=pending.notice.id,
                        attempts=pending.attempts,
                        error=pending.last_error,
                    )
                else:
                    self._dead_letter(pending, e)
                    report.dead_lettered += 1
            else:
                with self._lock:
                    self._delivered += 1
                report.delivered += 1
        return report

    def _dead_letter(self, pending: PendingNotice, exc: Exception) -> None:
        letter = DeadLetter(
            notice=pending.notice,
            attempts=pending.attempts,
            error=RetryExhaustedError(pending.attempts, exc),
            dead_lettered_at=self._clock(),
        )
        with self._lock:
            self._dead_letters.append(letter)
        log.error(
            "Notice dead-lettered",
            error_code="NOTICE_DEAD_LETTER",
            notice_id=pending.notice.id,
            record_id=pending.notice.record_id,
            recipient_id=pending.notice.recipient_id,
            attempts=pending.attempts,
            last_error=pending.last_error,
        )
        if self._bus is not None:
            self._bus.publish(NoticeDeadLettered(
                notice_id=pending.notice.id,
                record_id=pending.notice.record_id,
                recipient_id=pending.notice.recipient_id,
                attempts=pending.attempts,
                last_error=pending.last_error,
            ))
        if self._on_dead_letter is not None:
            self._on_dead_letter(letter)

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start(self, poll_interval: float = 1.0) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run,
            args=(poll_interval,),
            daemon=True,
            name="rentcycle-notice-retry",
        )
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def _run(self, poll_interval: float) -> None:
        while not self._stop.wait(poll_interval):
            self.drain()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def pending(self) -> List[PendingNotice]:
        with self._lock:
            return list(self._pending)

    @property
    def dead_letters(self) -> List[DeadLetter]:
        with self._lock:
            return list(self._dead_letters)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "delivered": self._delivered,
                "pending": len(self._pending),
                "dead_lettered": len(self._dead_letters),
            }
