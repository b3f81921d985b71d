"""
Store and invariant enforcer tests.

Writes that bypass the processor (raw SQL, admin tooling) must still be
rejected by the triggers generated from the transition table.

Run with: pytest tests/test_store_enforcer.py -v
"""

import sqlite3
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import PROVIDER, REQUESTER
from rentcycle.core import format_timestamp
from rentcycle.errors import InvariantViolation, StoreError
from rentcycle.models import (
    ClaimOutcome,
    DamageClaim,
    InspectionDirection,
    LedgerEntry,
    LedgerKind,
    new_id,
)
from rentcycle.states import Command, RentalStatus
from rentcycle.store import RentalStore


def _make_claim(rental_id: str, at, amount: str = "10.00") -> DamageClaim:
    return DamageClaim(
        id=new_id("claim"),
        rental_id=rental_id,
        filed_by=PROVIDER,
        description="scratched lens",
        claimed_amount=Decimal(amount),
        created_at=at,
    )


def _raw(store: RentalStore, sql: str, *params):
    return store.connection().execute(sql, params)


# =============================================================================
# SCHEMA
# =============================================================================

class TestSchema:
    """Store construction."""

    def test_memory_database_rejected(self):
        """Per-thread connections need a shared file."""
        with pytest.raises(StoreError):
            RentalStore(":memory:")

    def test_reopen_is_idempotent(self, tmp_path, lifecycle):
        record = lifecycle.create()
        again = RentalStore(tmp_path / "rentcycle.db")
        try:
            assert again.get_rental(record.id).status == RentalStatus.PENDING
            assert len(again.legal_transitions()) == 14
        finally:
            again.close()

    def test_legal_transitions_view(self, store):
        rows = {(r["from_status"], r["to_status"]) for r in store.legal_transitions()}
        assert ("pending", "paid") in rows
        assert ("pending", "awaiting_pickup_inspection") not in rows

    def test_parties_must_differ(self, store, clock):
        with pytest.raises(InvariantViolation):
            store.create_rental(REQUESTER, REQUESTER, "item-1",
                                clock().date(), clock().date(), now=clock())

    def test_end_not_before_start(self, store, clock):
        with pytest.raises(InvariantViolation):
            store.create_rental(REQUESTER, PROVIDER, "item-1",
                                clock().date(), clock().date() - timedelta(days=1), now=clock())


# =============================================================================
# STATUS ENFORCEMENT
# =============================================================================

class TestStatusEnforcement:
    """Every write to status passes the triggers."""

    def test_insert_must_be_pending(self, store, clock):
        ts = format_timestamp(clock())
        with pytest.raises(sqlite3.IntegrityError, match="created in pending"):
            _raw(
                store,
                """INSERT INTO rentals (id, status, requester_id, provider_id, item_id,
                       start_date, end_date, status_updated_at, created_at)
                   VALUES ('r-x', 'active', 'a', 'b', 'i', '2026-06-10', '2026-06-12', ?, ?)""",
                ts, ts,
            )

    def test_unknown_status_rejected(self, lifecycle, store):
        record = lifecycle.create()
        with pytest.raises(sqlite3.IntegrityError):
            _raw(store, "UPDATE rentals SET status = 'lost' WHERE id = ?", record.id)

    def test_direct_illegal_write_fails(self, lifecycle, store, clock):
        """pending → active skips every guard and must be refused."""
        record = lifecycle.create()
        later = format_timestamp(clock() + timedelta(seconds=1))
        with pytest.raises(sqlite3.IntegrityError, match="illegal status transition"):
            _raw(
                store,
                "UPDATE rentals SET status = 'active', status_updated_at = ?, activated_at = ? WHERE id = ?",
                later, later, record.id,
            )
        assert store.get_rental(record.id).status == RentalStatus.PENDING

    def test_admin_write_cannot_skip_edges(self, lifecycle, store, clock):
        record = lifecycle.create()
        with pytest.raises(InvariantViolation, match="illegal status transition"):
            store.admin_set_status(record.id, RentalStatus.COMPLETED, clock() + timedelta(seconds=1))

    def test_admin_write_on_legal_edge(self, lifecycle, store, clock):
        record = lifecycle.create()
        store.admin_set_status(record.id, RentalStatus.DECLINED, clock() + timedelta(seconds=1))
        assert store.get_rental(record.id).status == RentalStatus.DECLINED

    def test_admin_identity_write_keeps_timestamp(self, lifecycle, store, clock):
        record = lifecycle.create()
        store.admin_set_status(record.id, RentalStatus.PENDING, clock() + timedelta(hours=1))
        assert store.get_rental(record.id).status_updated_at == record.status_updated_at

    def test_transition_must_advance_clock(self, lifecycle, store):
        record = lifecycle.create()
        with pytest.raises(sqlite3.IntegrityError, match="must advance"):
            _raw(store, "UPDATE rentals SET status = 'declined' WHERE id = ?", record.id)

    def test_clock_never_decreases(self, lifecycle, store, clock):
        record = lifecycle.create()
        earlier = format_timestamp(clock() - timedelta(days=1))
        with pytest.raises(sqlite3.IntegrityError, match="may not decrease"):
            _raw(store, "UPDATE rentals SET status_updated_at = ? WHERE id = ?", earlier, record.id)


# =============================================================================
# COMPARE AND SWAP
# =============================================================================

class TestCompareAndSwap:
    """The only status write the processor uses."""

    def test_swap_from_expected(self, lifecycle, store, clock):
        record = lifecycle.create()
        at = clock() + timedelta(seconds=1)
        assert store.compare_and_swap_status(record.id, RentalStatus.PENDING, RentalStatus.CANCELLED, at)
        updated = store.get_rental(record.id)
        assert updated.status == RentalStatus.CANCELLED
        assert updated.status_updated_at == at
        assert updated.cancelled_at == at

    def test_stale_expectation_misses(self, lifecycle, store, clock):
        record = lifecycle.create()
        at = clock() + timedelta(seconds=1)
        assert store.compare_and_swap_status(record.id, RentalStatus.PENDING, RentalStatus.DECLINED, at)
        assert not store.compare_and_swap_status(
            record.id, RentalStatus.PENDING, RentalStatus.CANCELLED, at + timedelta(seconds=1)
        )
        assert store.get_rental(record.id).status == RentalStatus.DECLINED

    def test_illegal_pair_rejected_before_sql(self, lifecycle, store, clock):
        record = lifecycle.create()
        with pytest.raises(InvariantViolation):
            store.compare_and_swap_status(
                record.id, RentalStatus.PENDING, RentalStatus.ACTIVE, clock() + timedelta(seconds=1)
            )

    def test_identity_swap_is_noop(self, lifecycle, store, clock):
        record = lifecycle.create()
        assert store.compare_and_swap_status(
            record.id, RentalStatus.PENDING, RentalStatus.PENDING, clock() + timedelta(hours=1)
        )
        assert store.get_rental(record.id).status_updated_at == record.status_updated_at

    def test_rollback_on_error(self, lifecycle, store, clock):
        record = lifecycle.create()
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.compare_and_swap_status(
                    record.id, RentalStatus.PENDING, RentalStatus.DECLINED, clock() + timedelta(seconds=1)
                )
                raise RuntimeError("boom")
        assert store.get_rental(record.id).status == RentalStatus.PENDING


# =============================================================================
# MILESTONES
# =============================================================================

class TestMilestones:
    """Milestones are set on entry and never touched again."""

    def test_entry_requires_milestone(self, lifecycle, store, clock):
        record = lifecycle.create()
        later = format_timestamp(clock() + timedelta(seconds=1))
        with pytest.raises(sqlite3.IntegrityError, match="cancelled_at must be set"):
            _raw(
                store,
                "UPDATE rentals SET status = 'cancelled', status_updated_at = ? WHERE id = ?",
                later, record.id,
            )

    def test_milestone_cannot_be_cleared(self, lifecycle, store):
        record = lifecycle.to_status(RentalStatus.ACTIVE)
        assert record.activated_at is not None
        with pytest.raises(sqlite3.IntegrityError, match="set once"):
            _raw(store, "UPDATE rentals SET activated_at = NULL WHERE id = ?", record.id)

    def test_milestone_cannot_be_rewritten(self, lifecycle, store, clock):
        record = lifecycle.to_status(RentalStatus.ACTIVE)
        other = format_timestamp(clock() + timedelta(days=3))
        with pytest.raises(sqlite3.IntegrityError, match="set once"):
            _raw(store, "UPDATE rentals SET activated_at = ? WHERE id = ?", other, record.id)

    def test_processor_sets_milestone_once(self, lifecycle, store):
        record = lifecycle.to_status(RentalStatus.PENDING_REVIEW)
        activated = record.activated_at
        lifecycle.attempt(record.id, Command.CONFIRM_COMPLETION, PROVIDER)
        done = store.get_rental(record.id)
        assert done.activated_at == activated
        assert done.completed_at == done.status_updated_at
        assert done.disputed_at is None


# =============================================================================
# OWNED ROWS
# =============================================================================

class TestOwnedRows:
    """Ledger, history, inspections and claims."""

    def test_ledger_is_append_only(self, lifecycle, store):
        record = lifecycle.to_status(RentalStatus.AWAITING_PICKUP_INSPECTION)
        entries = store.list_ledger(record.id)
        assert entries
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            _raw(store, "UPDATE ledger_entries SET amount = '0.00' WHERE id = ?", entries[0].id)
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            _raw(store, "DELETE FROM ledger_entries WHERE id = ?", entries[0].id)

    def test_ledger_idempotency_key_unique(self, lifecycle, store, clock):
        record = lifecycle.to_status(RentalStatus.AWAITING_PICKUP_INSPECTION)
        existing = store.list_ledger(record.id)[0]
        duplicate = LedgerEntry(
            id=new_id("ledger"),
            rental_id=record.id,
            kind=LedgerKind.HOLD,
            amount=Decimal("1.00"),
            currency="USD",
            beneficiary_id=PROVIDER,
            reason="replayed side effect",
            idempotency_key=existing.idempotency_key,
            created_at=clock(),
        )
        with pytest.raises(InvariantViolation):
            store.append_ledger(duplicate)

    def test_history_is_append_only(self, lifecycle, store):
        record = lifecycle.to_status(RentalStatus.AWAITING_PICKUP_INSPECTION)
        events = store.list_events(record.id)
        assert [e.new_status for e in events] == [
            RentalStatus.PAID,
            RentalStatus.AWAITING_PICKUP_INSPECTION,
        ]
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            _raw(store, "DELETE FROM rental_events WHERE seq = ?", events[0].seq)

    def test_signed_inspection_is_frozen(self, lifecycle, store, desk):
        record = lifecycle.to_status(RentalStatus.AWAITING_PICKUP_INSPECTION)
        lifecycle.sign(record.id, InspectionDirection.PICKUP)
        inspection = store.get_inspection(record.id, InspectionDirection.PICKUP)
        inspection.notes = "edited after signing"
        with pytest.raises(InvariantViolation, match="immutable"):
            store.update_inspection(inspection)
        with pytest.raises(sqlite3.IntegrityError, match="immutable"):
            _raw(store, "DELETE FROM handoff_inspections WHERE id = ?", inspection.id)
        assert desk.verify(store.get_inspection(record.id, InspectionDirection.PICKUP))

    def test_one_inspection_per_direction(self, lifecycle, desk):
        record = lifecycle.to_status(RentalStatus.AWAITING_PICKUP_INSPECTION)
        desk.begin(record.id, InspectionDirection.PICKUP, REQUESTER)
        with pytest.raises(InvariantViolation):
            desk.begin(record.id, InspectionDirection.PICKUP, PROVIDER)

    def test_claims_only_during_review(self, lifecycle, store, clock):
        record = lifecycle.to_status(RentalStatus.ACTIVE)
        with pytest.raises(InvariantViolation, match="during review"):
            store.insert_claim(_make_claim(record.id, clock()))

    def test_one_open_claim(self, lifecycle, store, clock):
        record = lifecycle.to_status(RentalStatus.PENDING_REVIEW)
        lifecycle.attempt(record.id, Command.REPORT_DAMAGE, PROVIDER,
                          {"description": "cracked housing", "amount": "20.00"})
        with pytest.raises(InvariantViolation):
            store.insert_claim(_make_claim(record.id, clock()))

    def test_resolved_claim_is_frozen(self, lifecycle, store, clock):
        record = lifecycle.to_status(RentalStatus.PENDING_REVIEW)
        lifecycle.attempt(record.id, Command.REPORT_DAMAGE, PROVIDER,
                          {"description": "cracked housing", "amount": "20.00"})
        claim = store.get_open_claim(record.id)
        store.resolve_claim(claim.id, ClaimOutcome.REJECTED, Decimal("0"), "resolver-1", clock())
        with pytest.raises(StoreError):
            store.resolve_claim(claim.id, ClaimOutcome.ACCEPTED, Decimal("5"), "resolver-1", clock())
        with pytest.raises(sqlite3.IntegrityError, match="resolved claims are immutable"):
            _raw(store, "UPDATE damage_claims SET deduction_amount = '5.00' WHERE id = ?", claim.id)
