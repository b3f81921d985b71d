"""
Rentcycle State Store

SQLite-backed persistence for rental records and the rows they own:
payment captures, handoff inspections, damage claims, settlement ledger
entries and the transition history.

Status changes go through ``compare_and_swap_status`` only. Every other
write to ``status`` (admin tooling, migrations) still passes the triggers
installed from :mod:`rentcycle.enforcer`.

Each thread gets its own connection to the same database file, so
concurrent callers race at the storage layer rather than on a Python lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from rentcycle import enforcer
from rentcycle.core import format_timestamp, parse_timestamp, utc_now
from rentcycle.errors import InvariantViolation, StoreError
from rentcycle.models import (
    ClaimOutcome,
    ClaimStatus,
    DamageClaim,
    HandoffInspection,
    InspectionDirection,
    LedgerEntry,
    LedgerKind,
    PaymentCapture,
    PaymentStatus,
    RentalEvent,
    RentalRecord,
    amount as _amount,
    new_id,
)
from rentcycle.states import MILESTONES, RentalStatus

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None


class _Transaction:
    """
    SQLite transaction context manager.

    Opens with BEGIN IMMEDIATE so the write lock is taken up front.
    Nested use on the same thread joins the outer transaction.
    """

    def __init__(self, store: "RentalStore"):
        self.store = store
        self.conn: Optional[sqlite3.Connection] = None
        self._outer = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.store.connection()
        state = self.store._local
        if getattr(state, "in_transaction", False):
            return self.conn
        self.conn.execute("BEGIN IMMEDIATE")
        state.in_transaction = True
        self._outer = True
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._outer:
            return False
        self.store._local.in_transaction = False
        if exc_type is None:
            self.conn.execute("COMMIT")
        else:
            self.conn.execute("ROLLBACK")
        return False


class RentalStore:
    """SQLite-backed store for rental lifecycle state."""

    def __init__(self, db_path: Union[str, Path] = "rentcycle.db", busy_timeout_ms: int = 5000):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise StoreError("RentalStore needs a database file shared across threads")
        self.busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._create_tables()

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def connection(self) -> sqlite3.Connection:
        """This thread's connection, opened on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                check_same_thread=False,
                timeout=self.busy_timeout_ms / 1000,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
            self._local.in_transaction = False
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def transaction(self) -> _Transaction:
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.compare_and_swap_status(...)
                store.append_ledger(...)
                # Both committed atomically, or both rolled back
        """
        return _Transaction(self)

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    @contextmanager
    def _guarded(self, table: str) -> Iterator[None]:
        """Translate integrity failures into InvariantViolation."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            message = str(e)
            if enforcer.is_invariant_message(message):
                message = message.split(enforcer.INVARIANT_PREFIX, 1)[1].strip()
            raise InvariantViolation(message, table=table) from e

    def _execute(self, sql: str, params: Any = (), table: str = "") -> sqlite3.Cursor:
        with self._guarded(table):
            return self.connection().execute(sql, params)

    def _create_tables(self) -> None:
        conn = self.connection()
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS rentals (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK ({enforcer.status_check_sql()}),
                requester_id TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                status_updated_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                rental_amount TEXT NOT NULL DEFAULT '0.00',
                deposit_amount TEXT NOT NULL DEFAULT '0.00',
                currency TEXT NOT NULL DEFAULT 'USD',
                activated_at TEXT,
                completed_at TEXT,
                disputed_at TEXT,
                cancelled_at TEXT,
                CHECK (requester_id <> provider_id),
                CHECK (end_date >= start_date)
            );

            CREATE TABLE IF NOT EXISTS payment_captures (
                id TEXT PRIMARY KEY,
                rental_id TEXT NOT NULL REFERENCES rentals(id),
                amount TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'captured', 'failed')),
                provider_reference TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS handoff_inspections (
                id TEXT PRIMARY KEY,
                rental_id TEXT NOT NULL REFERENCES rentals(id),
                direction TEXT NOT NULL CHECK (direction IN ('pickup', 'return')),
                inspector_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                evidence_refs TEXT NOT NULL DEFAULT '[]',
                notes TEXT NOT NULL DEFAULT '',
                signed INTEGER NOT NULL DEFAULT 0,
                signed_by TEXT,
                signed_at TEXT,
                content_digest TEXT,
                UNIQUE (rental_id, direction)
            );

            CREATE TABLE IF NOT EXISTS damage_claims (
                id TEXT PRIMARY KEY,
                rental_id TEXT NOT NULL REFERENCES rentals(id),
                filed_by TEXT NOT NULL,
                description TEXT NOT NULL,
                claimed_amount TEXT NOT NULL,
                evidence_refs TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved')),
                outcome TEXT CHECK (outcome IS NULL OR outcome IN ('accepted', 'rejected')),
                deduction_amount TEXT,
                resolution_notes TEXT NOT NULL DEFAULT '',
                resolved_by TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                id TEXT PRIMARY KEY,
                rental_id TEXT NOT NULL REFERENCES rentals(id),
                kind TEXT NOT NULL CHECK (kind IN ('hold', 'release', 'capture')),
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                beneficiary_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                transition_event_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rental_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                rental_id TEXT NOT NULL REFERENCES rentals(id),
                command TEXT NOT NULL,
                old_status TEXT NOT NULL,
                new_status TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                actor_role TEXT NOT NULL,
                at TEXT NOT NULL,
                correlation_id TEXT NOT NULL DEFAULT '',
                payload TEXT NOT NULL DEFAULT '{{}}'
            );

            CREATE INDEX IF NOT EXISTS idx_rentals_status_start
                ON rentals(status, start_date);
            CREATE INDEX IF NOT EXISTS idx_payments_rental ON payment_captures(rental_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_claims_one_open
                ON damage_claims(rental_id) WHERE status = 'open';
            CREATE INDEX IF NOT EXISTS idx_ledger_rental ON ledger_entries(rental_id);
            CREATE INDEX IF NOT EXISTS idx_events_rental ON rental_events(rental_id);
        """)
        conn.executescript(enforcer.enforcement_sql())

    # ------------------------------------------------------------------
    # Rentals
    # ------------------------------------------------------------------

    def create_rental(
        self,
        requester_id: str,
        provider_id: str,
        item_id: str,
        start_date: date,
        end_date: date,
        rental_amount: Any = "0.00",
        deposit_amount: Any = "0.00",
        currency: str = "USD",
        rental_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RentalRecord:
        """Insert a new rental in ``pending``. Used by the upstream request flow."""
        now = now or utc_now()
        record = RentalRecord(
            id=rental_id or new_id("rental"),
            status=RentalStatus.PENDING,
            requester_id=requester_id,
            provider_id=provider_id,
            item_id=item_id,
            start_date=start_date,
            end_date=end_date,
            status_updated_at=now,
            created_at=now,
            rental_amount=_amount(rental_amount, "rental_amount"),
            deposit_amount=_amount(deposit_amount, "deposit_amount"),
            currency=currency,
        )
        self._execute(
            """INSERT INTO rentals (id, status, requester_id, provider_id, item_id,
                   start_date, end_date, status_updated_at, created_at,
                   rental_amount, deposit_amount, currency)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id, record.status.value, record.requester_id,
                record.provider_id, record.item_id,
                record.start_date.isoformat(), record.end_date.isoformat(),
                _ts(now), _ts(now),
                str(record.rental_amount), str(record.deposit_amount), currency,
            ),
            table="rentals",
        )
        logger.debug("Created rental %s in pending", record.id)
        return record

    def get_rental(self, rental_id: str) -> Optional[RentalRecord]:
        row = self.connection().execute(
            "SELECT * FROM rentals WHERE id = ?", (rental_id,)
        ).fetchone()
        return RentalRecord.from_row(row) if row else None

    def list_by_status(self, status: RentalStatus, limit: int = 1000) -> List[RentalRecord]:
        rows = self.connection().execute(
            "SELECT * FROM rentals WHERE status = ? ORDER BY status_updated_at LIMIT ?",
            (status.value, limit),
        ).fetchall()
        return [RentalRecord.from_row(r) for r in rows]

    def list_due_for_activation(self, today: date, limit: int = 1000) -> List[RentalRecord]:
        """Rentals waiting on their start date whose start date has arrived."""
        rows = self.connection().execute(
            """SELECT * FROM rentals
               WHERE status = ? AND start_date <= ?
               ORDER BY start_date, id LIMIT ?""",
            (RentalStatus.AWAITING_START_DATE.value, today.isoformat(), limit),
        ).fetchall()
        return [RentalRecord.from_row(r) for r in rows]

    def compare_and_swap_status(
        self,
        rental_id: str,
        expected: RentalStatus,
        new: RentalStatus,
        at: datetime,
    ) -> bool:
        """
        Set status = new where status = expected.

        Stamps ``status_updated_at`` and, when ``new`` is a milestone state,
        fills the milestone column if it is still empty. Returns False when
        no row matched, i.e. someone else moved the record first.
        """
        enforcer.check_transition(expected, new)
        assignments = ["status = ?"]
        params: List[Any] = [new.value]
        column = MILESTONES.get(new)
        if new != expected:
            assignments.append("status_updated_at = ?")
            params.append(_ts(at))
        if column and new != expected:
            assignments.append(f"{column} = COALESCE({column}, ?)")
            params.append(_ts(at))
        params.extend([rental_id, expected.value])
        cursor = self._execute(
            f"UPDATE rentals SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
            table="rentals",
        )
        return cursor.rowcount == 1

    def admin_set_status(self, rental_id: str, status: RentalStatus, at: Optional[datetime] = None) -> None:
        """
        Unchecked status write for operators and data repair.

        Bypasses the processor's guards but not the store triggers.
        """
        at = at or utc_now()
        column = MILESTONES.get(status)
        extra = f", {column} = COALESCE({column}, :at)" if column else ""
        self._execute(
            "UPDATE rentals SET status = :status,"
            " status_updated_at = CASE WHEN status = :status"
            " THEN status_updated_at ELSE :at END"
            f"{extra} WHERE id = :id",
            {"status": status.value, "at": _ts(at), "id": rental_id},
            table="rentals",
        )
        logger.warning("Admin status write on rental %s -> %s", rental_id, status.value)

    # ------------------------------------------------------------------
    # Payment captures
    # ------------------------------------------------------------------

    def record_payment(
        self,
        rental_id: str,
        amount: Any,
        status: PaymentStatus = PaymentStatus.CAPTURED,
        provider_reference: str = "",
        at: Optional[datetime] = None,
    ) -> PaymentCapture:
        """Store the payment provider's confirmation for a rental."""
        capture = PaymentCapture(
            id=new_id("pay"),
            rental_id=rental_id,
            amount=_amount(amount),
            status=status,
            provider_reference=provider_reference,
            recorded_at=at or utc_now(),
        )
        self._execute(
            """INSERT INTO payment_captures (id, rental_id, amount, status,
                   provider_reference, recorded_at) VALUES (?, ?, ?, ?, ?, ?)""",
            (capture.id, rental_id, str(capture.amount), status.value,
             provider_reference, _ts(capture.recorded_at)),
            table="payment_captures",
        )
        return capture

    def get_captured_payment(self, rental_id: str) -> Optional[PaymentCapture]:
        row = self.connection().execute(
            """SELECT * FROM payment_captures WHERE rental_id = ? AND status = 'captured'
               ORDER BY recorded_at DESC LIMIT 1""",
            (rental_id,),
        ).fetchone()
        if row is None:
            return None
        return PaymentCapture(
            id=row["id"],
            rental_id=row["rental_id"],
            amount=Decimal(row["amount"]),
            status=PaymentStatus(row["status"]),
            provider_reference=row["provider_reference"],
            recorded_at=parse_timestamp(row["recorded_at"]),
        )

    # ------------------------------------------------------------------
    # Handoff inspections
    # ------------------------------------------------------------------

    def insert_inspection(self, inspection: HandoffInspection) -> HandoffInspection:
        self._execute(
            """INSERT INTO handoff_inspections (id, rental_id, direction, inspector_id,
                   created_at, evidence_refs, notes, signed, signed_by, signed_at,
                   content_digest)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                inspection.id, inspection.rental_id, inspection.direction.value,
                inspection.inspector_id, _ts(inspection.created_at),
                json.dumps(inspection.evidence_refs), inspection.notes,
                int(inspection.signed), inspection.signed_by,
                _ts(inspection.signed_at), inspection.content_digest,
            ),
            table="handoff_inspections",
        )
        return inspection

    def update_inspection(self, inspection: HandoffInspection) -> None:
        """Persist evidence, notes and signature. Fails once the row is signed."""
        self._execute(
            """UPDATE handoff_inspections
               SET evidence_refs = ?, notes = ?, signed = ?, signed_by = ?,
                   signed_at = ?, content_digest = ?
               WHERE id = ?""",
            (
                json.dumps(inspection.evidence_refs), inspection.notes,
                int(inspection.signed), inspection.signed_by,
                _ts(inspection.signed_at), inspection.content_digest, inspection.id,
            ),
            table="handoff_inspections",
        )

    def get_inspection(
        self, rental_id: str, direction: InspectionDirection
    ) -> Optional[HandoffInspection]:
        row = self.connection().execute(
            "SELECT * FROM handoff_inspections WHERE rental_id = ? AND direction = ?",
            (rental_id, direction.value),
        ).fetchone()
        return self._row_to_inspection(row) if row else None

    def _row_to_inspection(self, row: sqlite3.Row) -> HandoffInspection:
        return HandoffInspection(
            id=row["id"],
            rental_id=row["rental_id"],
            direction=InspectionDirection(row["direction"]),
            inspector_id=row["inspector_id"],
            created_at=parse_timestamp(row["created_at"]),
            evidence_refs=json.loads(row["evidence_refs"]),
            notes=row["notes"],
            signed=bool(row["signed"]),
            signed_by=row["signed_by"],
            signed_at=parse_timestamp(row["signed_at"]),
            content_digest=row["content_digest"],
        )

    # ------------------------------------------------------------------
    # Damage claims
    # ------------------------------------------------------------------

    def insert_claim(self, claim: DamageClaim) -> DamageClaim:
        self._execute(
            """INSERT INTO damage_claims (id, rental_id, filed_by, description,
                   claimed_amount, evidence_refs, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                claim.id, claim.rental_id, claim.filed_by, claim.description,
                str(claim.claimed_amount), json.dumps(claim.evidence_refs),
                claim.status.value, _ts(claim.created_at),
            ),
            table="damage_claims",
        )
        return claim

    def resolve_claim(
        self,
        claim_id: str,
        outcome: ClaimOutcome,
        deduction_amount: Decimal,
        resolved_by: str,
        at: datetime,
        notes: str = "",
    ) -> None:
        cursor = self._execute(
            """UPDATE damage_claims
               SET status = 'resolved', outcome = ?, deduction_amount = ?,
                   resolution_notes = ?, resolved_by = ?, resolved_at = ?
               WHERE id = ? AND status = 'open'""",
            (outcome.value, str(deduction_amount), notes, resolved_by, _ts(at), claim_id),
            table="damage_claims",
        )
        if cursor.rowcount != 1:
            raise StoreError(f"Claim {claim_id} is not open")

    def get_open_claim(self, rental_id: str) -> Optional[DamageClaim]:
        row = self.connection().execute(
            "SELECT * FROM damage_claims WHERE rental_id = ? AND status = 'open'",
            (rental_id,),
        ).fetchone()
        return self._row_to_claim(row) if row else None

    def list_claims(self, rental_id: str) -> List[DamageClaim]:
        rows = self.connection().execute(
            "SELECT * FROM damage_claims WHERE rental_id = ? ORDER BY created_at",
            (rental_id,),
        ).fetchall()
        return [self._row_to_claim(r) for r in rows]

    def _row_to_claim(self, row: sqlite3.Row) -> DamageClaim:
        return DamageClaim(
            id=row["id"],
            rental_id=row["rental_id"],
            filed_by=row["filed_by"],
            description=row["description"],
            claimed_amount=Decimal(row["claimed_amount"]),
            created_at=parse_timestamp(row["created_at"]),
            evidence_refs=json.loads(row["evidence_refs"]),
            status=ClaimStatus(row["status"]),
            outcome=ClaimOutcome(row["outcome"]) if row["outcome"] else None,
            deduction_amount=(
                Decimal(row["deduction_amount"]) if row["deduction_amount"] is not None else None
            ),
            resolution_notes=row["resolution_notes"],
            resolved_by=row["resolved_by"],
            resolved_at=parse_timestamp(row["resolved_at"]),
        )

    # ------------------------------------------------------------------
    # Settlement ledger
    # ------------------------------------------------------------------

    def append_ledger(self, entry: LedgerEntry) -> LedgerEntry:
        self._execute(
            """INSERT INTO ledger_entries (id, rental_id, kind, amount, currency,
                   beneficiary_id, reason, idempotency_key, transition_event_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id, entry.rental_id, entry.kind.value, str(entry.amount),
                entry.currency, entry.beneficiary_id, entry.reason,
                entry.idempotency_key, entry.transition_event_id, _ts(entry.created_at),
            ),
            table="ledger_entries",
        )
        return entry

    def list_ledger(self, rental_id: str) -> List[LedgerEntry]:
        rows = self.connection().execute(
            "SELECT * FROM ledger_entries WHERE rental_id = ? ORDER BY rowid",
            (rental_id,),
        ).fetchall()
        return [
            LedgerEntry(
                id=r["id"],
                rental_id=r["rental_id"],
                kind=LedgerKind(r["kind"]),
                amount=Decimal(r["amount"]),
                currency=r["currency"],
                beneficiary_id=r["beneficiary_id"],
                reason=r["reason"],
                idempotency_key=r["idempotency_key"],
                created_at=parse_timestamp(r["created_at"]),
                transition_event_id=r["transition_event_id"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Transition history
    # ------------------------------------------------------------------

    def append_event(
        self,
        rental_id: str,
        command: str,
        old_status: RentalStatus,
        new_status: RentalStatus,
        actor_id: str,
        actor_role: str,
        at: datetime,
        correlation_id: str = "",
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a history row and return its sequence number."""
        cursor = self._execute(
            """INSERT INTO rental_events (rental_id, command, old_status, new_status,
                   actor_id, actor_role, at, correlation_id, payload)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                rental_id, command, old_status.value, new_status.value,
                actor_id, actor_role, _ts(at), correlation_id,
                json.dumps(payload or {}, sort_keys=True, default=str),
            ),
            table="rental_events",
        )
        return int(cursor.lastrowid)

    def list_events(self, rental_id: str) -> List[RentalEvent]:
        rows = self.connection().execute(
            "SELECT * FROM rental_events WHERE rental_id = ? ORDER BY seq",
            (rental_id,),
        ).fetchall()
        return [
            RentalEvent(
                seq=r["seq"],
                rental_id=r["rental_id"],
                command=r["command"],
                old_status=RentalStatus(r["old_status"]),
                new_status=RentalStatus(r["new_status"]),
                actor_id=r["actor_id"],
                actor_role=r["actor_role"],
                at=parse_timestamp(r["at"]),
                correlation_id=r["correlation_id"],
                payload=json.loads(r["payload"]),
            )
            for r in rows
        ]

    def legal_transitions(self) -> List[Dict[str, str]]:
        """Rows of the store's own transition view, for operators and drift checks."""
        rows = self.connection().execute(
            "SELECT from_status, to_status, command FROM legal_transitions"
        ).fetchall()
        return [dict(r) for r in rows]


__all__ = ["RentalStore"]
