"""
Error taxonomy for the rental lifecycle engine.

Command failures (raised synchronously by ``TransitionProcessor.attempt``):

    TransitionError
    ├─ Unauthorized     wrong actor for the command, never retried
    ├─ GuardFailed      precondition unmet, resolve it and retry
    │  └─ InvalidPayload
    ├─ Conflict         lost the compare-and-swap, re-read and decide
    └─ NotFound         record does not exist

Store failures:

    StoreError
    └─ InvariantViolation   a write rejected by the store-level enforcer

``SideEffectDeferred`` is not an exception. It is returned inside a
successful result to say that a notice was queued for retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class RentcycleError(Exception):
    """Base class for all rentcycle errors."""
    pass


# ════════════════════════════════════════════════════════════════════════════
# COMMAND FAILURES
# ════════════════════════════════════════════════════════════════════════════


class TransitionError(RentcycleError):
    """A command that did not change state."""

    code = "transition_error"
    hint = ""

    def __init__(self, message: str, record_id: str = "", command: str = ""):
        self.record_id = record_id
        self.command = command
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "error": self.code,
            "message": str(self),
            "record_id": self.record_id,
            "command": self.command,
        }
        if self.hint:
            data["hint"] = self.hint
        return data


class Unauthorized(TransitionError):
    """The actor is not allowed to issue this command on this record."""

    code = "unauthorized"

    def __init__(self, record_id: str, command: str, actor_id: str, reason: str = ""):
        self.actor_id = actor_id
        message = f"Actor {actor_id!r} may not issue {command} on rental {record_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, record_id, command)


class GuardFailed(TransitionError):
    """A precondition of the requested transition does not hold."""

    code = "guard_failed"

    def __init__(self, record_id: str, command: str, guard: str, condition: str):
        self.guard = guard
        self.condition = condition
        super().__init__(
            f"Cannot {command} rental {record_id}: {condition}",
            record_id,
            command,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["guard"] = self.guard
        data["condition"] = self.condition
        return data


class InvalidPayload(GuardFailed):
    """The command payload failed schema or business validation."""

    code = "invalid_payload"

    def __init__(self, record_id: str, command: str, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            record_id,
            command,
            guard="payload_valid",
            condition="invalid payload: " + "; ".join(self.errors),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class Conflict(TransitionError):
    """Another actor changed the record since it was read."""

    code = "conflict"
    hint = "refresh the rental and decide whether the command still applies"

    def __init__(self, record_id: str, command: str, expected_status: str):
        self.expected_status = expected_status
        super().__init__(
            f"Rental {record_id} is no longer {expected_status}; {command} was not applied",
            record_id,
            command,
        )


class NotFound(TransitionError):
    """No rental exists with the given id."""

    code = "not_found"

    def __init__(self, record_id: str, command: str = ""):
        super().__init__(f"Rental not found: {record_id}", record_id, command)


@dataclass
class SideEffectDeferred:
    """A non-essential side effect that was queued for retry."""
    kind: str
    record_id: str
    reason: str
    notice_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "record_id": self.record_id,
            "reason": self.reason,
            "notice_id": self.notice_id,
            "details": self.details,
        }


# ════════════════════════════════════════════════════════════════════════════
# STORE FAILURES
# ════════════════════════════════════════════════════════════════════════════


class StoreError(RentcycleError):
    """Persistence layer error."""
    pass


class InvariantViolation(StoreError):
    """The store-level enforcer rejected a write."""

    def __init__(self, message: str, table: str = ""):
        self.table = table
        super().__init__(message)


__all__ = [
    "RentcycleError",
    "TransitionError",
    "Unauthorized",
    "GuardFailed",
    "InvalidPayload",
    "Conflict",
    "NotFound",
    "SideEffectDeferred",
    "StoreError",
    "InvariantViolation",
]
