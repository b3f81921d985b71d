"""
Persistent invariant enforcer.

Generates the SQLite DDL that makes the store itself reject corrupt
writes, whichever code path issues them. Everything here is derived from
``TRANSITION_TABLE`` and ``MILESTONES`` in :mod:`rentcycle.states`:

    legal_transitions   read-only view of the table's (from, to, command) rows
    status CHECK        status must be a known RentalStatus
    insert trigger      new rentals start in pending
    transition trigger  (old, new) must be identity or in legal_transitions
    clock trigger       status_updated_at never decreases, and strictly
                        increases on a real transition
    milestone triggers  set on first entry to the state, never cleared or changed
    append-only         ledger_entries and rental_events reject UPDATE/DELETE
    signed inspections  immutable
    resolved claims     immutable
    claim filing        only while the rental is under review

Trigger messages start with ``invariant:`` so the store can tell them apart
from other integrity errors.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from rentcycle.errors import InvariantViolation
from rentcycle.states import (
    MILESTONES,
    RentalStatus,
    TRANSITION_TABLE,
    is_legal,
)

logger = logging.getLogger(__name__)

INVARIANT_PREFIX = "invariant:"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def status_check_sql(column: str = "status") -> str:
    """CHECK constraint body limiting a column to known statuses."""
    values = ", ".join(_quote(s.value) for s in RentalStatus)
    return f"{column} IN ({values})"


def legal_transition_rows() -> List[Tuple[str, str, str]]:
    return [
        (rule.from_status.value, rule.to_status.value, rule.command.value)
        for rule in TRANSITION_TABLE
    ]


def _abort(message: str) -> str:
    return f"SELECT RAISE(ABORT, {_quote(INVARIANT_PREFIX + ' ' + message)});"


def _legal_transitions_view() -> str:
    values = ",\n        ".join(
        f"({_quote(f)}, {_quote(t)}, {_quote(c)})" for f, t, c in legal_transition_rows()
    )
    return (
        "DROP VIEW IF EXISTS legal_transitions;\n"
        "CREATE VIEW legal_transitions(from_status, to_status, command) AS\n"
        f"    VALUES\n        {values};\n"
    )


def _rental_triggers() -> List[Tuple[str, str]]:
    pending = _quote(RentalStatus.PENDING.value)
    triggers = [
        (
            "rentals_insert_pending",
            f"BEFORE INSERT ON rentals WHEN NEW.status <> {pending}\n"
            f"BEGIN {_abort('rentals must be created in pending status')} END;",
        ),
        (
            "rentals_status_transition",
            "BEFORE UPDATE OF status ON rentals\n"
            "WHEN NEW.status <> OLD.status AND NOT EXISTS (\n"
            "    SELECT 1 FROM legal_transitions\n"
            "    WHERE from_status = OLD.status AND to_status = NEW.status)\n"
            f"BEGIN {_abort('illegal status transition')} END;",
        ),
        (
            "rentals_status_clock_monotonic",
            "BEFORE UPDATE OF status_updated_at ON rentals\n"
            "WHEN NEW.status_updated_at < OLD.status_updated_at\n"
            f"BEGIN {_abort('status_updated_at may not decrease')} END;",
        ),
        (
            "rentals_status_clock_advances",
            "BEFORE UPDATE OF status ON rentals\n"
            "WHEN NEW.status <> OLD.status\n"
            "    AND NEW.status_updated_at <= OLD.status_updated_at\n"
            f"BEGIN {_abort('status_updated_at must advance on transition')} END;",
        ),
    ]
    for status, column in MILESTONES.items():
        triggers.append((
            f"rentals_{column}_set_once",
            f"BEFORE UPDATE OF {column} ON rentals\n"
            f"WHEN OLD.{column} IS NOT NULL\n"
            f"    AND (NEW.{column} IS NULL OR NEW.{column} <> OLD.{column})\n"
            f"BEGIN {_abort(f'{column} is set once and never cleared')} END;",
        ))
        triggers.append((
            f"rentals_{column}_on_entry",
            "BEFORE UPDATE OF status ON rentals\n"
            f"WHEN NEW.status = {_quote(status.value)} AND OLD.status <> NEW.status\n"
            f"    AND NEW.{column} IS NULL\n"
            f"BEGIN {_abort(f'{column} must be set on entering {status.value}')} END;",
        ))
    return triggers


def _owned_row_triggers() -> List[Tuple[str, str]]:
    triggers: List[Tuple[str, str]] = []
    for table in ("ledger_entries", "rental_events"):
        for op in ("UPDATE", "DELETE"):
            triggers.append((
                f"{table}_no_{op.lower()}",
                f"BEFORE {op} ON {table}\n"
                f"BEGIN {_abort(f'{table} is append-only')} END;",
            ))
    triggers.append((
        "handoff_inspections_signed_immutable",
        "BEFORE UPDATE ON handoff_inspections WHEN OLD.signed = 1\n"
        f"BEGIN {_abort('signed inspections are immutable')} END;",
    ))
    triggers.append((
        "handoff_inspections_signed_undeletable",
        "BEFORE DELETE ON handoff_inspections WHEN OLD.signed = 1\n"
        f"BEGIN {_abort('signed inspections are immutable')} END;",
    ))
    review_states = ", ".join(
        _quote(s.value) for s in (RentalStatus.PENDING_REVIEW, RentalStatus.DISPUTED)
    )
    triggers.append((
        "damage_claims_only_in_review",
        "BEFORE INSERT ON damage_claims\n"
        "WHEN (SELECT status FROM rentals WHERE id = NEW.rental_id)\n"
        f"    NOT IN ({review_states})\n"
        f"BEGIN {_abort('damage claims may only be filed during review')} END;",
    ))
    triggers.append((
        "damage_claims_resolved_immutable",
        "BEFORE UPDATE ON damage_claims WHEN OLD.status = 'resolved'\n"
        f"BEGIN {_abort('resolved claims are immutable')} END;",
    ))
    return triggers


def trigger_names() -> List[str]:
    return [name for name, _ in _rental_triggers() + _owned_row_triggers()]


def enforcement_sql() -> str:
    """
    Full DDL script installing the enforcer.

    Idempotent: the view and every trigger are dropped and recreated, so a
    store opened by a newer build picks up the current table.
    """
    parts = [_legal_transitions_view()]
    for name, body in _rental_triggers() + _owned_row_triggers():
        parts.append(f"DROP TRIGGER IF EXISTS {name};\nCREATE TRIGGER {name}\n{body}\n")
    return "\n".join(parts)


def check_transition(old: RentalStatus, new: RentalStatus) -> None:
    """Python-side twin of the transition trigger."""
    if not is_legal(old, new):
        raise InvariantViolation(
            f"illegal status transition from {old.value} to {new.value}",
            table="rentals",
        )


def is_invariant_message(message: str) -> bool:
    return INVARIANT_PREFIX in message


__all__ = [
    "INVARIANT_PREFIX",
    "status_check_sql",
    "legal_transition_rows",
    "enforcement_sql",
    "trigger_names",
    "check_transition",
    "is_invariant_message",
]
