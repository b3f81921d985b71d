"""
Handoff inspection desk.

Collaborator-side API for recording the item's condition at pickup and
return. It writes inspection rows only; the transition processor reads
``signed`` and ``signed_by`` as guard inputs and never writes here.

One inspection per direction per rental. Once signed, the row is frozen
by the store and carries a digest of what was signed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from rentcycle.core import digest_of, ensure_utc, format_timestamp, utc_now
from rentcycle.errors import GuardFailed, NotFound, Unauthorized
from rentcycle.models import HandoffInspection, InspectionDirection, new_id
from rentcycle.observability import Layer, get_logger
from rentcycle.states import RentalStatus
from rentcycle.store import RentalStore

log = get_logger("desk", Layer.INSPECTIONS)

# Statuses in which each handoff may be documented.
OPEN_WINDOWS: Dict[InspectionDirection, Tuple[RentalStatus, ...]] = {
    InspectionDirection.PICKUP: (
        RentalStatus.PAID,
        RentalStatus.AWAITING_PICKUP_INSPECTION,
    ),
    InspectionDirection.RETURN: (
        RentalStatus.ACTIVE,
        RentalStatus.AWAITING_RETURN_INSPECTION,
    ),
}


def signed_content(inspection: HandoffInspection) -> Dict[str, object]:
    """The fields a signature covers."""
    return {
        "rental_id": inspection.rental_id,
        "direction": inspection.direction.value,
        "inspector_id": inspection.inspector_id,
        "evidence_refs": list(inspection.evidence_refs),
        "notes": inspection.notes,
        "signed_by": inspection.signed_by,
        "signed_at": format_timestamp(inspection.signed_at) if inspection.signed_at else None,
    }


class InspectionDesk:
    """Begin, annotate and sign handoff inspections."""

    def __init__(self, store: RentalStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def _require_party(self, rental_id: str, principal_id: str, op: str) -> RentalStatus:
        record = self.store.get_rental(rental_id)
        if record is None:
            raise NotFound(rental_id, op)
        if record.party_role(principal_id) is None:
            raise Unauthorized(rental_id, op, principal_id, reason="not a party to this rental")
        return record.status

    def _require(self, rental_id: str, direction: InspectionDirection, op: str) -> HandoffInspection:
        inspection = self.store.get_inspection(rental_id, direction)
        if inspection is None:
            raise GuardFailed(
                rental_id, op, "inspection_exists",
                f"no {direction.value} inspection has been started",
            )
        return inspection

    def begin(
        self,
        rental_id: str,
        direction: InspectionDirection,
        inspector_id: str,
        evidence_refs: Optional[List[str]] = None,
        notes: str = "",
    ) -> HandoffInspection:
        """Start documenting a handoff."""
        op = f"begin_{direction.value}_inspection"
        status = self._require_party(rental_id, inspector_id, op)
        if status not in OPEN_WINDOWS[direction]:
            raise GuardFailed(
                rental_id, op, "inspection_window",
                f"{direction.value} inspection cannot start while the rental is {status.value}",
            )
        inspection = HandoffInspection(
            id=new_id("insp"),
            rental_id=rental_id,
            direction=direction,
            inspector_id=inspector_id,
            created_at=ensure_utc(self._clock()),
            evidence_refs=list(evidence_refs or []),
            notes=notes,
        )
        self.store.insert_inspection(inspection)
        log.info("Inspection started", rental_id=rental_id, direction=direction.value)
        return inspection

    def add_evidence(
        self,
        rental_id: str,
        direction: InspectionDirection,
        principal_id: str,
        evidence_refs: List[str],
        notes: Optional[str] = None,
    ) -> HandoffInspection:
        """Attach photos or notes to an unsigned inspection."""
        op = f"annotate_{direction.value}_inspection"
        self._require_party(rental_id, principal_id, op)
        inspection = self._require(rental_id, direction, op)
        if inspection.signed:
            raise GuardFailed(rental_id, op, "inspection_unsigned", "inspection is already signed")
        inspection.evidence_refs.extend(evidence_refs)
        if notes is not None:
            inspection.notes = notes
        self.store.update_inspection(inspection)
        return inspection

    def sign(
        self,
        rental_id: str,
        direction: InspectionDirection,
        signer_id: str,
    ) -> HandoffInspection:
        """Sign the inspection, freezing it."""
        op = f"sign_{direction.value}_inspection"
        self._require_party(rental_id, signer_id, op)
        inspection = self._require(rental_id, direction, op)
        if inspection.signed:
            raise GuardFailed(rental_id, op, "inspection_unsigned", "inspection is already signed")
        inspection.signed = True
        inspection.signed_by = signer_id
        inspection.signed_at = ensure_utc(self._clock())
        inspection.content_digest = digest_of(signed_content(inspection))
        self.store.update_inspection(inspection)
        log.info(
            "Inspection signed",
            rental_id=rental_id,
            direction=direction.value,
            signed_by=signer_id,
        )
        return inspection

    def verify(self, inspection: HandoffInspection) -> bool:
        """True if a signed inspection still matches its digest."""
        return inspection.signed and inspection.content_digest == digest_of(signed_content(inspection))
