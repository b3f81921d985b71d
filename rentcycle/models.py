"""
Rental lifecycle data model.

RentalRecord is the aggregate root. Inspections, claims, ledger entries,
payment captures and events hang off it by ``rental_id``. All timestamps
are timezone-aware UTC datetimes; all amounts are Decimal.
"""

from __future__ import annotations

import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from rentcycle.core import format_timestamp, parse_date, parse_timestamp, to_decimal
from rentcycle.states import ActorRole, MILESTONES, RentalStatus


def new_id(prefix: str) -> str:
    """Generate a short random identifier with a readable prefix."""
    return f"{prefix}-{secrets.token_hex(8)}"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


class InspectionDirection(Enum):
    """Which handoff an inspection documents."""
    PICKUP = "pickup"
    RETURN = "return"


class ClaimStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ClaimOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class LedgerKind(Enum):
    """Fund movements recorded in the settlement ledger."""
    HOLD = "hold"
    RELEASE = "release"
    CAPTURE = "capture"


class PaymentStatus(Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


# =============================================================================
# ACTOR
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """
    The principal issuing a command.

    ``role`` is optional for human callers: the processor derives it from
    the record's requester and provider ids. The system scheduler and
    dispute resolvers are recognised by the ids configured under ``auth``.
    """
    principal_id: str
    role: Optional[ActorRole] = None

    @classmethod
    def system(cls, principal_id: str = "system:scheduler") -> "Actor":
        return cls(principal_id=principal_id, role=ActorRole.SYSTEM)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "role": self.role.value if self.role else None,
        }


# =============================================================================
# RENTAL RECORD
# =============================================================================

@dataclass
class RentalRecord:
    """Aggregate root of one rental transaction."""
    id: str
    status: RentalStatus
    requester_id: str
    provider_id: str
    item_id: str
    start_date: date
    end_date: date
    status_updated_at: datetime
    created_at: datetime
    rental_amount: Decimal = Decimal("0.00")
    deposit_amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def total_held(self) -> Decimal:
        return self.rental_amount + self.deposit_amount

    def party_role(self, principal_id: str) -> Optional[ActorRole]:
        """Role of a principal on this record, if they are a party to it."""
        if principal_id == self.requester_id:
            return ActorRole.REQUESTER
        if principal_id == self.provider_id:
            return ActorRole.PROVIDER
        return None

    def milestone(self, status: RentalStatus) -> Optional[datetime]:
        column = MILESTONES.get(status)
        return getattr(self, column) if column else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "requester_id": self.requester_id,
            "provider_id": self.provider_id,
            "item_id": self.item_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status_updated_at": _ts(self.status_updated_at),
            "created_at": _ts(self.created_at),
            "rental_amount": str(self.rental_amount),
            "deposit_amount": str(self.deposit_amount),
            "currency": self.currency,
            "activated_at": _ts(self.activated_at),
            "completed_at": _ts(self.completed_at),
            "disputed_at": _ts(self.disputed_at),
            "cancelled_at": _ts(self.cancelled_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RentalRecord":
        return cls(
            id=row["id"],
            status=RentalStatus(row["status"]),
            requester_id=row["requester_id"],
            provider_id=row["provider_id"],
            item_id=row["item_id"],
            start_date=parse_date(row["start_date"]),
            end_date=parse_date(row["end_date"]),
            status_updated_at=parse_timestamp(row["status_updated_at"]),
            created_at=parse_timestamp(row["created_at"]),
            rental_amount=Decimal(row["rental_amount"]),
            deposit_amount=Decimal(row["deposit_amount"]),
            currency=row["currency"],
            activated_at=parse_timestamp(row["activated_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            disputed_at=parse_timestamp(row["disputed_at"]),
            cancelled_at=parse_timestamp(row["cancelled_at"]),
        )


# =============================================================================
# OWNED ROWS
# =============================================================================

@dataclass
class HandoffInspection:
    """Signed record of the item's condition at pickup or return."""
    id: str
    rental_id: str
    direction: InspectionDirection
    inspector_id: str
    created_at: datetime
    evidence_refs: List[str] = field(default_factory=list)
    notes: str = ""
    signed: bool = False
    signed_by: Optional[str] = None
    signed_at: Optional[datetime] = None
    content_digest: Optional[str] = None

    def is_signed_by(self, principal_id: str) -> bool:
        return self.signed and self.signed_by == principal_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "direction": self.direction.value,
            "inspector_id": self.inspector_id,
            "created_at": _ts(self.created_at),
            "evidence_refs": list(self.evidence_refs),
            "notes": self.notes,
            "signed": self.signed,
            "signed_by": self.signed_by,
            "signed_at": _ts(self.signed_at),
            "content_digest": self.content_digest,
        }


@dataclass
class DamageClaim:
    """Provider's claim against the deposit, filed during review."""
    id: str
    rental_id: str
    filed_by: str
    description: str
    claimed_amount: Decimal
    created_at: datetime
    evidence_refs: List[str] = field(default_factory=list)
    status: ClaimStatus = ClaimStatus.OPEN
    outcome: Optional[ClaimOutcome] = None
    deduction_amount: Optional[Decimal] = None
    resolution_notes: str = ""
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ClaimStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "filed_by": self.filed_by,
            "description": self.description,
            "claimed_amount": str(self.claimed_amount),
            "created_at": _ts(self.created_at),
            "evidence_refs": list(self.evidence_refs),
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "deduction_amount": (
                str(self.deduction_amount) if self.deduction_amount is not None else None
            ),
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _ts(self.resolved_at),
        }


@dataclass
class LedgerEntry:
    """Immutable fund movement created as a transition side effect."""
    id: str
    rental_id: str
    kind: LedgerKind
    amount: Decimal
    currency: str
    beneficiary_id: str
    reason: str
    idempotency_key: str
    created_at: datetime
    transition_event_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "beneficiary_id": self.beneficiary_id,
            "reason": self.reason,
            "idempotency_key": self.idempotency_key,
            "created_at": _ts(self.created_at),
            "transition_event_id": self.transition_event_id,
        }


@dataclass
class PaymentCapture:
    """Upstream payment provider's confirmation for a rental."""
    id: str
    rental_id: str
    amount: Decimal
    status: PaymentStatus
    provider_reference: str
    recorded_at: datetime

    @property
    def is_captured(self) -> bool:
        return self.status == PaymentStatus.CAPTURED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rental_id": self.rental_id,
            "amount": str(self.amount),
            "status": self.status.value,
            "provider_reference": self.provider_reference,
            "recorded_at": _ts(self.recorded_at),
        }


@dataclass
class RentalEvent:
    """Append-only history row written with each committed transition."""
    seq: int
    rental_id: str
    command: str
    old_status: RentalStatus
    new_status: RentalStatus
    actor_id: str
    actor_role: str
    at: datetime
    correlation_id: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "rental_id": self.rental_id,
            "command": self.command,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "at": _ts(self.at),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }


def amount(value: Any, field_name: str = "amount") -> Decimal:
    """Validated non-negative amount."""
    result = to_decimal(value, field_name)
    if result < 0:
        raise ValueError(f"{field_name} must not be negative: {value!r}")
    return result
