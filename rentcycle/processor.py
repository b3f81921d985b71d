"""
Transition processor.

The single entry point that changes a rental's status:

    attempt(record_id, command, actor, payload)
        1. load            current record, NotFound if missing
        2. authorize       actor's role vs. the command's allowed roles
        3. select edge     the one table edge the command takes from the
                           current status, GuardFailed if there is none
        4. validate        payload schema, then the edge's guard on live data
        5. commit          CAS on status + history row + claim/ledger rows,
                           all in one transaction; Conflict if the CAS misses
        6. after commit    publish to the change feed, dispatch notices
                           (failures come back as SideEffectDeferred)
        7. auto-promote    paid → awaiting_pickup_inspection as the system actor

No Python lock protects a record. Two callers racing on the same record
both pass steps 1-4; the database lets exactly one CAS through.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from rentcycle.config import RentcycleConfig, get_config
from rentcycle.core import ensure_utc, format_timestamp, next_tick, start_of_day, utc_now
from rentcycle.errors import (
    Conflict,
    GuardFailed,
    InvalidPayload,
    NotFound,
    SideEffectDeferred,
    Unauthorized,
)
from rentcycle.events import EventBus, TransitionCommitted
from rentcycle.feed import ChangeFeed
from rentcycle.models import (
    Actor,
    ClaimOutcome,
    DamageClaim,
    InspectionDirection,
    RentalRecord,
    amount as parse_amount,
    new_id,
)
from rentcycle.notices import (
    DeadLetter,
    LoggingNoticeSink,
    NoticeDispatcher,
    NoticeSink,
    build_notices,
)
from rentcycle.observability import (
    Layer,
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)
from rentcycle.payloads import require_valid_payload
from rentcycle.resilience import CircuitBreaker, RetryPolicy
from rentcycle.settlement import ledger_entries, plan_movements
from rentcycle.states import (
    ActorRole,
    Command,
    Guard,
    RentalStatus,
    TransitionRule,
    roles_for,
    rule_for,
)
from rentcycle.store import RentalStore

log = get_logger("processor", Layer.PROCESSOR)


@dataclass
class TransitionResult:
    """Outcome of a successful ``attempt``."""
    record_id: str
    command: Command
    old_status: RentalStatus
    new_status: RentalStatus
    at: datetime
    seq: int
    actor_id: str
    actor_role: ActorRole
    correlation_id: str = ""
    deferred: List[SideEffectDeferred] = field(default_factory=list)
    promoted_to: Optional[RentalStatus] = None

    @property
    def final_status(self) -> RentalStatus:
        """Status after any automatic follow-up transition."""
        return self.promoted_to or self.new_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "command": self.command.value,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "final_status": self.final_status.value,
            "at": format_timestamp(self.at),
            "seq": self.seq,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "correlation_id": self.correlation_id,
            "deferred": [d.to_dict() for d in self.deferred],
            "promoted_to": self.promoted_to.value if self.promoted_to else None,
        }


@dataclass
class _GuardOutcome:
    """Values computed while checking a guard and needed at commit time."""
    claim: Optional[DamageClaim] = None
    claim_to_resolve: Optional[DamageClaim] = None
    outcome: Optional[ClaimOutcome] = None
    deduction: Optional[Decimal] = None


class TransitionProcessor:
    """
    Guarded command processor for rental records.

    Example:
        processor = TransitionProcessor(store, feed=feed, notices=dispatcher)
        result = processor.attempt(rental.id, "complete_payment", Actor.system())
        result.final_status  # RentalStatus.AWAITING_PICKUP_INSPECTION
    """

    def __init__(
        self,
        store: RentalStore,
        feed: Optional[ChangeFeed] = None,
        notices: Optional[NoticeDispatcher] = None,
        config: Optional[RentcycleConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        auto_promote: bool = True,
    ):
        self.store = store
        self.feed = feed
        self.notices = notices
        self.config = config or get_config()
        self._clock = clock
        self.auto_promote = auto_promote

    @property
    def system_actor(self) -> Actor:
        return Actor.system(self.config.auth.system_actor_id.get())

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def attempt(
        self,
        record_id: str,
        command: Union[Command, str],
        actor: Union[Actor, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Issue ``command`` against a rental on behalf of ``actor``.

        Raises Unauthorized, GuardFailed (or InvalidPayload), Conflict or
        NotFound without changing state. Returns a TransitionResult once the
        status change is committed; undelivered notices are listed in
        ``result.deferred``.
        """
        token = None
        if not correlation_id_var.get():
            token = set_correlation_id(generate_correlation_id())
        try:
            return self._attempt(record_id, command, actor, payload)
        finally:
            if token is not None:
                reset_correlation_id(token)

    @timed_operation(log, "attempt")
    def _attempt(
        self,
        record_id: str,
        command: Union[Command, str],
        actor: Union[Actor, str],
        payload: Optional[Dict[str, Any]],
    ) -> TransitionResult:
        command = self._coerce_command(record_id, command)
        if isinstance(actor, str):
            actor = Actor(actor)

        try:
            record = self.store.get_rental(record_id)
            if record is None:
                raise NotFound(record_id, command.value)

            role = self._authorize(record, command, actor)
            rule = rule_for(command, record.status)
            if rule is None:
                raise GuardFailed(
                    record_id,
                    command.value,
                    guard="edge_exists",
                    condition=f"{command.value} is not possible while the rental is {record.status.value}",
                )
            if role not in rule.allowed_roles:
                raise Unauthorized(
                    record_id, command.value, actor.principal_id,
                    reason=f"{role.value} may not {command.value} from {record.status.value}",
                )

            payload = require_valid_payload(record_id, command, payload)
            now = ensure_utc(self._clock())
            outcome = self._check_guard(rule, record, actor, payload, now)
            result = self._commit(record, rule, actor, role, payload, outcome, now)
        except Unauthorized as e:
            log.warning(str(e), operation="attempt", error_code=e.code,
                        record_id=record_id, command=command.value, actor_id=actor.principal_id)
            raise
        except (GuardFailed, Conflict, NotFound) as e:
            log.info(str(e), operation="attempt", error_code=e.code,
                     record_id=record_id, command=command.value, actor_id=actor.principal_id)
            raise

        result.deferred.extend(self._after_commit(record, rule, result, payload, outcome))

        if self.auto_promote and result.new_status == RentalStatus.PAID:
            self._promote(result)
        return result

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _coerce_command(self, record_id: str, command: Union[Command, str]) -> Command:
        if isinstance(command, Command):
            return command
        try:
            return Command(command)
        except ValueError:
            raise GuardFailed(
                record_id, str(command), guard="known_command",
                condition=f"unknown command {command!r}",
            ) from None

    def _resolve_role(self, record: RentalRecord, actor: Actor) -> Optional[ActorRole]:
        """The role this principal actually holds on this record."""
        system_id = self.config.auth.system_actor_id.get()
        resolver_ids = set(self.config.auth.resolver_ids.get() or [])
        held = set()
        party = record.party_role(actor.principal_id)
        if party is not None:
            held.add(party)
        if actor.principal_id == system_id:
            held.add(ActorRole.SYSTEM)
        if actor.principal_id in resolver_ids:
            held.add(ActorRole.RESOLVER)

        if actor.role is not None:
            return actor.role if actor.role in held else None
        for role in (ActorRole.REQUESTER, ActorRole.PROVIDER, ActorRole.SYSTEM, ActorRole.RESOLVER):
            if role in held:
                return role
        return None

    def _authorize(self, record: RentalRecord, command: Command, actor: Actor) -> ActorRole:
        role = self._resolve_role(record, actor)
        if role is None:
            claimed = f" as {actor.role.value}" if actor.role else ""
            raise Unauthorized(
                record.id, command.value, actor.principal_id,
                reason=f"not a recognised principal{claimed} for this rental",
            )
        if role not in roles_for(command):
            raise Unauthorized(
                record.id, command.value, actor.principal_id,
                reason=f"{command.value} is not available to the {role.value}",
            )
        return role

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_guard(
        self,
        rule: TransitionRule,
        record: RentalRecord,
        actor: Actor,
        payload: Dict[str, Any],
        now: datetime,
    ) -> _GuardOutcome:
        guard = rule.guard
        command = rule.command.value

        def fail(condition: str) -> GuardFailed:
            return GuardFailed(record.id, command, guard.value, condition)

        def money(field_name: str) -> Decimal:
            try:
                return parse_amount(payload[field_name], field_name)
            except ValueError as e:
                raise InvalidPayload(record.id, command, [f"$.{field_name}: {e}"]) from e

        if guard == Guard.NONE:
            return _GuardOutcome()

        if guard == Guard.PAYMENT_CAPTURED:
            capture = self.store.get_captured_payment(record.id)
            if capture is None:
                raise fail("payment capture has not been confirmed")
            if capture.amount < record.total_held:
                raise fail(
                    f"captured amount {capture.amount} is less than "
                    f"rental plus deposit {record.total_held}"
                )
            return _GuardOutcome()

        if guard in (Guard.OUTBOUND_INSPECTION_SIGNED, Guard.INBOUND_INSPECTION_SIGNED):
            direction = (
                InspectionDirection.PICKUP
                if guard == Guard.OUTBOUND_INSPECTION_SIGNED
                else InspectionDirection.RETURN
            )
            inspection = self.store.get_inspection(record.id, direction)
            if inspection is None:
                raise fail(f"no {direction.value} inspection exists")
            if not inspection.signed:
                raise fail(f"the {direction.value} inspection is not signed")
            if not inspection.is_signed_by(record.requester_id):
                raise fail(f"the {direction.value} inspection was not signed by the requester")
            return _GuardOutcome()

        if guard == Guard.START_DATE_REACHED:
            if record.start_date > now.date():
                raise fail(f"start date {record.start_date.isoformat()} has not been reached")
            return _GuardOutcome()

        if guard == Guard.WITHIN_CANCELLATION_WINDOW:
            hours = self.config.policy.cancellation_cutoff_hours.get()
            cutoff = start_of_day(record.start_date) - timedelta(hours=hours)
            if now >= cutoff:
                raise fail(
                    f"cancellation window closed at {format_timestamp(cutoff)} "
                    f"({hours}h before the start date)"
                )
            return _GuardOutcome()

        if guard == Guard.NO_OPEN_CLAIM:
            if self.store.get_open_claim(record.id) is not None:
                raise fail("an open damage claim exists")
            return _GuardOutcome()

        if guard == Guard.CLAIM_PAYLOAD_VALID:
            if self.store.get_open_claim(record.id) is not None:
                raise fail("an open damage claim already exists")
            description = payload["description"].strip()
            if not description:
                raise InvalidPayload(record.id, command, ["$.description: must not be blank"])
            claimed = money("amount")
            if claimed <= 0:
                raise InvalidPayload(record.id, command, ["$.amount: must be greater than zero"])
            if self.config.policy.cap_claim_at_deposit.get() and claimed > record.deposit_amount:
                raise fail(
                    f"claimed amount {claimed} exceeds the deposit {record.deposit_amount}"
                )
            claim = DamageClaim(
                id=new_id("claim"),
                rental_id=record.id,
                filed_by=actor.principal_id,
                description=description,
                claimed_amount=claimed,
                created_at=now,
                evidence_refs=list(payload.get("evidence_refs", [])),
            )
            return _GuardOutcome(claim=claim)

        if guard == Guard.OPEN_CLAIM_EXISTS:
            claim = self.store.get_open_claim(record.id)
            if claim is None:
                raise fail("no open damage claim to resolve")
            outcome = ClaimOutcome(payload["outcome"])
            requested = payload.get("deduction_amount")
            if outcome == ClaimOutcome.REJECTED:
                if requested is not None and money("deduction_amount") > 0:
                    raise InvalidPayload(
                        record.id, command,
                        ["$.deduction_amount: must be zero when the claim is rejected"],
                    )
                deduction = Decimal("0.00")
            else:
                deduction = (
                    money("deduction_amount")
                    if requested is not None
                    else claim.claimed_amount
                )
                if deduction > claim.claimed_amount:
                    raise fail(
                        f"deduction {deduction} exceeds the claimed amount {claim.claimed_amount}"
                    )
                deduction = min(deduction, record.deposit_amount)
            return _GuardOutcome(claim_to_resolve=claim, outcome=outcome, deduction=deduction)

        raise fail(f"unhandled guard {guard.value}")

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(
        self,
        record: RentalRecord,
        rule: TransitionRule,
        actor: Actor,
        role: ActorRole,
        payload: Dict[str, Any],
        outcome: _GuardOutcome,
        now: datetime,
    ) -> TransitionResult:
        old, new = rule.pair
        at = next_tick(now, record.status_updated_at)
        correlation_id = get_correlation_id()

        with self.store.transaction():
            if not self.store.compare_and_swap_status(record.id, old, new, at):
                raise Conflict(record.id, rule.command.value, old.value)

            seq = self.store.append_event(
                rental_id=record.id,
                command=rule.command.value,
                old_status=old,
                new_status=new,
                actor_id=actor.principal_id,
                actor_role=role.value,
                at=at,
                correlation_id=correlation_id,
                payload=payload,
            )

            if outcome.claim is not None:
                self.store.insert_claim(outcome.claim)
            if outcome.claim_to_resolve is not None:
                self.store.resolve_claim(
                    outcome.claim_to_resolve.id,
                    outcome.outcome,
                    outcome.deduction,
                    resolved_by=actor.principal_id,
                    at=at,
                    notes=payload.get("notes", ""),
                )

            movements = plan_movements(
                record,
                rule,
                penalty_rate=self.config.policy.late_cancellation_penalty_rate.get(),
                deduction=outcome.deduction,
            )
            for entry in ledger_entries(record, movements, seq, at):
                self.store.append_ledger(entry)

        log.info(
            f"Rental {record.id}: {old.value} -> {new.value}",
            operation="commit",
            record_id=record.id,
            command=rule.command.value,
            actor_id=actor.principal_id,
            actor_role=role.value,
            seq=seq,
        )
        return TransitionResult(
            record_id=record.id,
            command=rule.command,
            old_status=old,
            new_status=new,
            at=at,
            seq=seq,
            actor_id=actor.principal_id,
            actor_role=role,
            correlation_id=correlation_id,
        )

    def _after_commit(
        self,
        record: RentalRecord,
        rule: TransitionRule,
        result: TransitionResult,
        payload: Dict[str, Any],
        outcome: _GuardOutcome,
    ) -> List[SideEffectDeferred]:
        if self.feed is not None:
            self.feed.publish(TransitionCommitted(
                record_id=record.id,
                old_status=result.old_status.value,
                new_status=result.new_status.value,
                at=format_timestamp(result.at),
                command=rule.command.value,
                seq=result.seq,
                correlation_id=result.correlation_id,
            ))

        if self.notices is None:
            return []
        data: Dict[str, Any] = {"command": rule.command.value}
        if payload.get("reason"):
            data["reason"] = payload["reason"]
        if outcome.claim is not None:
            data["claimed_amount"] = str(outcome.claim.claimed_amount)
        if outcome.deduction is not None:
            data["deduction_amount"] = str(outcome.deduction)
        notices = build_notices(record, rule.command, result.new_status, result.seq, result.at, data)
        return self.notices.dispatch(notices)

    def _promote(self, result: TransitionResult) -> None:
        """Take the automatic paid → awaiting_pickup_inspection edge."""
        try:
            follow_up = self._attempt(
                result.record_id, Command.PROMOTE_TO_PICKUP, self.system_actor, None
            )
        except (Conflict, GuardFailed) as e:
            log.debug(
                "Automatic promotion already applied",
                record_id=result.record_id,
                reason=str(e),
            )
            return
        result.promoted_to = follow_up.new_status
        result.deferred.extend(follow_up.deferred)


def build_processor(
    config: Optional[RentcycleConfig] = None,
    db_path: Optional[str] = None,
    sink: Optional[NoticeSink] = None,
    clock: Callable[[], datetime] = utc_now,
    on_dead_letter: Optional[Callable[[DeadLetter], None]] = None,
) -> TransitionProcessor:
    """
    Wire a processor with its store, change feed and notice dispatcher
    from configuration.

    Args:
        config: Configuration to read (the global one by default)
        db_path: Overrides ``store.path``
        sink: Notice collaborator; notices are only logged when omitted
        clock: Shared by the processor and the notice retry schedule
        on_dead_letter: Alert hook for notices that exhausted their retries
    """
    config = config or get_config()
    store = RentalStore(
        db_path or config.store.path.get(),
        busy_timeout_ms=config.store.busy_timeout_ms.get(),
    )

    bus = EventBus(
        async_queue_size=config.feed.queue_size.get(),
        poll_interval=config.feed.max_delivery_delay_seconds.get(),
    )
    async_delivery = config.feed.async_delivery.get()
    if async_delivery:
        bus.start_async_processing()
    feed = ChangeFeed(bus, async_delivery=async_delivery)

    notices = config.notices
    dispatcher = NoticeDispatcher(
        sink or LoggingNoticeSink(),
        retry_policy=RetryPolicy(
            max_attempts=notices.max_attempts.get(),
            base_delay_seconds=notices.base_delay_seconds.get(),
            max_delay_seconds=notices.max_delay_seconds.get(),
        ),
        breaker=CircuitBreaker(
            "notices",
            failure_threshold=notices.breaker_failure_threshold.get(),
            timeout_seconds=notices.breaker_timeout_seconds.get(),
            clock=clock,
        ),
        clock=clock,
        on_dead_letter=on_dead_letter,
        bus=bus,
    )
    return TransitionProcessor(store, feed=feed, notices=dispatcher, config=config, clock=clock)
