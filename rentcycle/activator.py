"""
Scheduled activator.

Periodically promotes time-gated rentals through the ordinary command
path, acting as the configured system actor:

    awaiting_start_date and start_date <= today   → start_rental
    paid (automatic promotion did not happen)     → promote_to_pickup

The sweep is idempotent. A record that moved on since the scan (another
sweep, a human caller) comes back as Conflict, or as GuardFailed on the
missing edge, and is counted as already applied. Any other refusal leaves
the record where it was and is reported as failed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from rentcycle.core import ensure_utc, format_timestamp, utc_now
from rentcycle.errors import Conflict, GuardFailed, RentcycleError
from rentcycle.models import Actor
from rentcycle.observability import (
    Layer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from rentcycle.processor import TransitionProcessor
from rentcycle.states import Command, RentalStatus

log = get_logger("scheduler", Layer.ACTIVATOR)


@dataclass
class ActivationReport:
    """What one sweep did."""
    started_at: datetime
    examined: int = 0
    activated: List[str] = field(default_factory=list)
    promoted: List[str] = field(default_factory=list)
    already_applied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": format_timestamp(self.started_at),
            "examined": self.examined,
            "activated": list(self.activated),
            "promoted": list(self.promoted),
            "already_applied": list(self.already_applied),
            "failed": dict(self.failed),
        }


class ScheduledActivator:
    """
    Issues start_rental for rentals whose start date has arrived.

    Example:
        activator = ScheduledActivator(processor)
        report = activator.run_once()
        activator.start()     # every scheduler.interval_seconds
        activator.stop()
    """

    def __init__(
        self,
        processor: TransitionProcessor,
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        sweep_paid: Optional[bool] = None,
        clock: Optional[Callable[[], datetime]] = None,
        actor: Optional[Actor] = None,
    ):
        scheduler = processor.config.scheduler
        self.processor = processor
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else scheduler.interval_seconds.get()
        )
        self.batch_size = batch_size if batch_size is not None else scheduler.batch_size.get()
        self.sweep_paid = sweep_paid if sweep_paid is not None else scheduler.sweep_paid.get()
        self._clock = clock or processor._clock
        self.actor = actor or processor.system_actor
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[ActivationReport] = None

    def run_once(self, now: Optional[datetime] = None) -> ActivationReport:
        """Run a single sweep."""
        now = ensure_utc(now or self._clock())
        report = ActivationReport(started_at=now)
        token = set_correlation_id(generate_correlation_id())
        try:
            store = self.processor.store
            due = store.list_due_for_activation(now.date(), limit=self.batch_size)
            for record in due:
                self._issue(record.id, Command.START_RENTAL, report, report.activated)

            if self.sweep_paid:
                for record in store.list_by_status(RentalStatus.PAID, limit=self.batch_size):
                    self._issue(record.id, Command.PROMOTE_TO_PICKUP, report, report.promoted)
        finally:
            reset_correlation_id(token)

        self.last_report = report
        log.info(
            "Activation sweep finished",
            operation="activation_sweep",
            examined=report.examined,
            activated=len(report.activated),
            promoted=len(report.promoted),
            already_applied=len(report.already_applied),
            failed=len(report.failed),
        )
        return report

    def _issue(self, record_id: str, command: Command, report: ActivationReport, bucket: List[str]) -> None:
        report.examined += 1
        try:
            self.processor.attempt(record_id, command, self.actor)
        except GuardFailed as e:
            if e.guard != "edge_exists":
                report.failed[record_id] = str(e)
                log.warning(
                    "Scheduled transition refused",
                    error_code="ACTIVATION_REFUSED",
                    record_id=record_id,
                    command=command.value,
                    guard=e.guard,
                )
                return
            report.already_applied.append(record_id)
            log.debug("Already applied", record_id=record_id, command=command.value, reason=str(e))
        except Conflict as e:
            report.already_applied.append(record_id)
            log.debug("Already applied", record_id=record_id, command=command.value, reason=str(e))
        except RentcycleError as e:
            report.failed[record_id] = str(e)
            log.error(
                "Scheduled transition failed",
                error_code="ACTIVATION_FAILED",
                exc_info=True,
                record_id=record_id,
                command=command.value,
            )
        else:
            bucket.append(record_id)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="rentcycle-activator"
        )
        self._thread.start()
        log.info("Activator started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            log.info("Activator stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                log.error("Activation sweep crashed", error_code="ACTIVATION_SWEEP_CRASHED", exc_info=True)
            if self._stop.wait(self.interval_seconds):
                break
