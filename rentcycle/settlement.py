"""
Settlement ledger planning.

Maps a committed transition to the fund movements it implies. The
processor writes the resulting entries in the same transaction as the
status change; the settlement collaborator only ever reads them.

| Transition                                   | Movements                                   |
|----------------------------------------------|---------------------------------------------|
| pending → paid                               | HOLD rental, HOLD deposit                   |
| paid / awaiting_pickup_inspection → cancelled| RELEASE rental and deposit to requester     |
| awaiting_start_date → cancelled              | CAPTURE penalty, RELEASE rest and deposit   |
| pending_review → completed                   | CAPTURE rental, RELEASE deposit             |
| disputed → completed                         | CAPTURE rental, CAPTURE deduction,          |
|                                              | RELEASE deposit less deduction              |
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from rentcycle.models import LedgerEntry, LedgerKind, RentalRecord, new_id
from rentcycle.states import RentalStatus, TransitionRule

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Movement:
    kind: LedgerKind
    amount: Decimal
    beneficiary_id: str
    reason: str


def late_cancellation_penalty(rental_amount: Decimal, rate: Decimal) -> Decimal:
    return (rental_amount * rate).quantize(CENTS, rounding=ROUND_HALF_UP)


def plan_movements(
    record: RentalRecord,
    rule: TransitionRule,
    penalty_rate: Decimal = Decimal("0"),
    deduction: Optional[Decimal] = None,
) -> List[Movement]:
    """Fund movements implied by taking ``rule`` on ``record``."""
    rental = record.rental_amount
    deposit = record.deposit_amount
    requester = record.requester_id
    provider = record.provider_id
    old, new = rule.pair

    movements: List[Movement] = []
    if new == RentalStatus.PAID:
        movements = [
            Movement(LedgerKind.HOLD, rental, provider, "rental payment held"),
            Movement(LedgerKind.HOLD, deposit, requester, "security deposit held"),
        ]
    elif new == RentalStatus.CANCELLED and old in (
        RentalStatus.PAID,
        RentalStatus.AWAITING_PICKUP_INSPECTION,
    ):
        movements = [
            Movement(LedgerKind.RELEASE, rental, requester, "rental payment refunded"),
            Movement(LedgerKind.RELEASE, deposit, requester, "security deposit released"),
        ]
    elif new == RentalStatus.CANCELLED and old == RentalStatus.AWAITING_START_DATE:
        penalty = min(late_cancellation_penalty(rental, penalty_rate), rental)
        movements = [
            Movement(LedgerKind.CAPTURE, penalty, provider, "late cancellation penalty"),
            Movement(LedgerKind.RELEASE, rental - penalty, requester, "rental payment refunded"),
            Movement(LedgerKind.RELEASE, deposit, requester, "security deposit released"),
        ]
    elif new == RentalStatus.COMPLETED and old == RentalStatus.PENDING_REVIEW:
        movements = [
            Movement(LedgerKind.CAPTURE, rental, provider, "rental payment captured"),
            Movement(LedgerKind.RELEASE, deposit, requester, "security deposit released"),
        ]
    elif new == RentalStatus.COMPLETED and old == RentalStatus.DISPUTED:
        taken = min(deduction or Decimal("0"), deposit)
        movements = [
            Movement(LedgerKind.CAPTURE, rental, provider, "rental payment captured"),
            Movement(LedgerKind.CAPTURE, taken, provider, "claim deduction"),
            Movement(LedgerKind.RELEASE, deposit - taken, requester, "security deposit released"),
        ]

    return [m for m in movements if m.amount > 0]


def ledger_entries(
    record: RentalRecord,
    movements: List[Movement],
    event_seq: int,
    at: datetime,
) -> List[LedgerEntry]:
    """
    Turn planned movements into ledger rows.

    The idempotency key ties each row to the transition event that caused
    it, so replaying a side effect cannot create a second row.
    """
    return [
        LedgerEntry(
            id=new_id("ledger"),
            rental_id=record.id,
            kind=m.kind,
            amount=m.amount.quantize(CENTS),
            currency=record.currency,
            beneficiary_id=m.beneficiary_id,
            reason=m.reason,
            idempotency_key=f"{record.id}:{event_seq}:{n}",
            created_at=at,
            transition_event_id=event_seq,
        )
        for n, m in enumerate(movements)
    ]
