"""
Rental lifecycle state model.

The transition table below is the single description of which status
changes are legal. The processor dispatches commands through it and the
store-level triggers in :mod:`rentcycle.enforcer` are generated from it,
so the two layers cannot disagree.

Happy path:

    pending → paid → awaiting_pickup_inspection → awaiting_start_date
        → active → awaiting_return_inspection → pending_review → completed

Side branches:

    pending | paid | awaiting_pickup_inspection | awaiting_start_date → cancelled
    pending → declined
    pending_review → disputed → completed
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple


class RentalStatus(Enum):
    """Lifecycle states of a rental record."""
    PENDING = "pending"
    PAID = "paid"
    AWAITING_PICKUP_INSPECTION = "awaiting_pickup_inspection"
    AWAITING_START_DATE = "awaiting_start_date"
    ACTIVE = "active"
    AWAITING_RETURN_INSPECTION = "awaiting_return_inspection"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"

    # Side branches
    CANCELLED = "cancelled"
    DECLINED = "declined"
    DISPUTED = "disputed"

    def is_terminal(self) -> bool:
        return self in {
            RentalStatus.COMPLETED,
            RentalStatus.CANCELLED,
            RentalStatus.DECLINED,
        }

    def allows_cancellation(self) -> bool:
        """Check if the rental can still be called off."""
        return self in {
            RentalStatus.PENDING,
            RentalStatus.PAID,
            RentalStatus.AWAITING_PICKUP_INSPECTION,
            RentalStatus.AWAITING_START_DATE,
        }


class Command(Enum):
    """Named actions accepted by the transition processor."""
    COMPLETE_PAYMENT = "complete_payment"
    PROMOTE_TO_PICKUP = "promote_to_pickup"
    COMPLETE_PICKUP_INSPECTION = "complete_pickup_inspection"
    START_RENTAL = "start_rental"
    INITIATE_RETURN = "initiate_return"
    COMPLETE_RETURN_INSPECTION = "complete_return_inspection"
    CONFIRM_COMPLETION = "confirm_completion"
    REPORT_DAMAGE = "report_damage"
    RESOLVE_DISPUTE = "resolve_dispute"
    CANCEL = "cancel"
    DECLINE = "decline"


class ActorRole(Enum):
    """Principals that may issue commands."""
    REQUESTER = "requester"
    PROVIDER = "provider"
    SYSTEM = "system"
    RESOLVER = "resolver"


class Guard(Enum):
    """Named preconditions evaluated against live data."""
    NONE = "none"
    PAYMENT_CAPTURED = "payment_captured"
    OUTBOUND_INSPECTION_SIGNED = "outbound_inspection_signed"
    INBOUND_INSPECTION_SIGNED = "inbound_inspection_signed"
    START_DATE_REACHED = "start_date_reached"
    WITHIN_CANCELLATION_WINDOW = "within_cancellation_window"
    NO_OPEN_CLAIM = "no_open_claim"
    CLAIM_PAYLOAD_VALID = "claim_payload_valid"
    OPEN_CLAIM_EXISTS = "open_claim_exists"


@dataclass(frozen=True)
class TransitionRule:
    """One legal edge of the lifecycle graph."""
    from_status: RentalStatus
    to_status: RentalStatus
    command: Command
    allowed_roles: FrozenSet[ActorRole]
    guard: Guard = Guard.NONE
    automatic: bool = False
    description: str = ""

    @property
    def pair(self) -> Tuple[RentalStatus, RentalStatus]:
        return (self.from_status, self.to_status)

    def to_dict(self) -> Dict[str, object]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "command": self.command.value,
            "allowed_roles": sorted(r.value for r in self.allowed_roles),
            "guard": self.guard.value,
            "automatic": self.automatic,
            "description": self.description,
        }


def _roles(*roles: ActorRole) -> FrozenSet[ActorRole]:
    return frozenset(roles)


S = RentalStatus
R = ActorRole

TRANSITION_TABLE: Tuple[TransitionRule, ...] = (
    TransitionRule(
        S.PENDING, S.PAID, Command.COMPLETE_PAYMENT,
        _roles(R.SYSTEM, R.REQUESTER), Guard.PAYMENT_CAPTURED,
        description="upstream payment capture confirmed",
    ),
    TransitionRule(
        S.PENDING, S.DECLINED, Command.DECLINE,
        _roles(R.PROVIDER),
        description="provider declines before payment",
    ),
    TransitionRule(
        S.PENDING, S.CANCELLED, Command.CANCEL,
        _roles(R.REQUESTER),
        description="requester cancels before payment",
    ),
    TransitionRule(
        S.PAID, S.AWAITING_PICKUP_INSPECTION, Command.PROMOTE_TO_PICKUP,
        _roles(R.SYSTEM), automatic=True,
        description="automatic, no guard",
    ),
    TransitionRule(
        S.PAID, S.CANCELLED, Command.CANCEL,
        _roles(R.REQUESTER, R.PROVIDER),
        description="refund initiated before handoff",
    ),
    TransitionRule(
        S.AWAITING_PICKUP_INSPECTION, S.AWAITING_START_DATE,
        Command.COMPLETE_PICKUP_INSPECTION,
        _roles(R.REQUESTER), Guard.OUTBOUND_INSPECTION_SIGNED,
        description="outbound inspection exists, signed, by requester",
    ),
    TransitionRule(
        S.AWAITING_PICKUP_INSPECTION, S.CANCELLED, Command.CANCEL,
        _roles(R.REQUESTER, R.PROVIDER), Guard.WITHIN_CANCELLATION_WINDOW,
        description="cancellation within allowed window",
    ),
    TransitionRule(
        S.AWAITING_START_DATE, S.ACTIVE, Command.START_RENTAL,
        _roles(R.SYSTEM, R.REQUESTER, R.PROVIDER), Guard.START_DATE_REACHED,
        description="start_date <= now",
    ),
    TransitionRule(
        S.AWAITING_START_DATE, S.CANCELLED, Command.CANCEL,
        _roles(R.REQUESTER, R.PROVIDER),
        description="late cancellation, penalty applies",
    ),
    TransitionRule(
        S.ACTIVE, S.AWAITING_RETURN_INSPECTION, Command.INITIATE_RETURN,
        _roles(R.REQUESTER),
        description="requester-initiated, any time while active",
    ),
    TransitionRule(
        S.AWAITING_RETURN_INSPECTION, S.PENDING_REVIEW,
        Command.COMPLETE_RETURN_INSPECTION,
        _roles(R.REQUESTER), Guard.INBOUND_INSPECTION_SIGNED,
        description="inbound inspection exists, signed, by requester",
    ),
    TransitionRule(
        S.PENDING_REVIEW, S.COMPLETED, Command.CONFIRM_COMPLETION,
        _roles(R.PROVIDER), Guard.NO_OPEN_CLAIM,
        description="provider confirms, no damage reported",
    ),
    TransitionRule(
        S.PENDING_REVIEW, S.DISPUTED, Command.REPORT_DAMAGE,
        _roles(R.PROVIDER), Guard.CLAIM_PAYLOAD_VALID,
        description="provider files a damage claim",
    ),
    TransitionRule(
        S.DISPUTED, S.COMPLETED, Command.RESOLVE_DISPUTE,
        _roles(R.RESOLVER, R.SYSTEM), Guard.OPEN_CLAIM_EXISTS,
        description="claim resolved (accepted or rejected)",
    ),
)

del S, R

# Column set exactly once on first entry to the keyed state.
MILESTONES: Dict[RentalStatus, str] = {
    RentalStatus.ACTIVE: "activated_at",
    RentalStatus.COMPLETED: "completed_at",
    RentalStatus.DISPUTED: "disputed_at",
    RentalStatus.CANCELLED: "cancelled_at",
}

_BY_COMMAND: Dict[Tuple[Command, RentalStatus], TransitionRule] = {}
for _rule in TRANSITION_TABLE:
    _key = (_rule.command, _rule.from_status)
    if _key in _BY_COMMAND:
        raise RuntimeError(f"Ambiguous transition table entry for {_key}")
    _BY_COMMAND[_key] = _rule
del _rule, _key


def legal_pairs() -> Set[Tuple[RentalStatus, RentalStatus]]:
    """All non-identity (old, new) pairs allowed by the table."""
    return {rule.pair for rule in TRANSITION_TABLE}


def is_legal(old: RentalStatus, new: RentalStatus) -> bool:
    """Identity writes are always legal; anything else must be in the table."""
    return old == new or (old, new) in legal_pairs()


def rule_for(command: Command, current: RentalStatus) -> Optional[TransitionRule]:
    """The single edge a command takes out of the current status, if any."""
    return _BY_COMMAND.get((command, current))


def rules_for_command(command: Command) -> List[TransitionRule]:
    return [rule for rule in TRANSITION_TABLE if rule.command == command]


def commands_from(status: RentalStatus) -> List[Command]:
    """Commands that have an edge out of the given status."""
    return [rule.command for rule in TRANSITION_TABLE if rule.from_status == status]


def roles_for(command: Command) -> FrozenSet[ActorRole]:
    """Union of roles that may issue a command from any source status."""
    roles: Set[ActorRole] = set()
    for rule in rules_for_command(command):
        roles |= rule.allowed_roles
    return frozenset(roles)


__all__ = [
    "RentalStatus",
    "Command",
    "ActorRole",
    "Guard",
    "TransitionRule",
    "TRANSITION_TABLE",
    "MILESTONES",
    "legal_pairs",
    "is_legal",
    "rule_for",
    "rules_for_command",
    "commands_from",
    "roles_for",
]
