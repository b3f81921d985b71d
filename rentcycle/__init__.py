"""
Rentcycle: Rental Lifecycle Transition Engine

Moves a peer-to-peer rental through its lifecycle from booking request to
completion, with every status change passing one guarded command path.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                       RENTAL LIFECYCLE ENGINE                            │
    │                                                                          │
    │  CALLERS                                                                 │
    │    cli.py          Operator commands (show, attempt, activate, table)    │
    │    activator.py    Scheduled start_rental / promote_to_pickup sweeps     │
    │    inspections.py  Handoff inspection desk (begin, annotate, sign)       │
    │                                                                          │
    │  COMMAND PATH                                                            │
    │    processor.py    authorize → select edge → guard → CAS commit          │
    │    payloads.py     JSON Schema validation of command payloads            │
    │    settlement.py   Hold / release / capture ledger planning              │
    │                                                                          │
    │  STATE                                                                   │
    │    states.py       The transition table, the only list of legal edges    │
    │    store.py        SQLite rows, transactions, compare-and-swap writes    │
    │    enforcer.py     Triggers generated from the transition table          │
    │                                                                          │
    │  AFTER COMMIT                                                            │
    │    feed.py         Per-record change feed and observer views             │
    │    notices.py      Best-effort notices with retry and dead letters       │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Transition Table: (from, to, command, roles, guard) rows. The processor
    dispatches commands from it and the store's triggers are generated from
    it, so the two can never disagree about which edges exist.

    Compare-and-Swap: a status write only lands if the stored status still
    equals the status the caller read. Two racing callers both pass their
    guards; the database lets exactly one through and the other gets
    Conflict.

    System Actor: the identity the scheduler acts as. Automatic transitions
    are ordinary commands issued by this actor.

Quick Start
───────────

    from rentcycle import RentalStore, TransitionProcessor, Actor

    store = RentalStore("rentcycle.db")
    processor = TransitionProcessor(store)
    result = processor.attempt(rental_id, "complete_payment", Actor.system())
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy import rentcycle modules on first access."""

    if name in ("RentalStatus", "Command", "ActorRole", "Guard", "TransitionRule",
                "TRANSITION_TABLE", "MILESTONES", "is_legal", "rule_for", "roles_for"):
        from rentcycle import states
        return getattr(states, name)

    if name in ("Actor", "RentalRecord", "HandoffInspection", "DamageClaim",
                "LedgerEntry", "PaymentCapture", "RentalEvent", "InspectionDirection",
                "ClaimOutcome", "LedgerKind", "PaymentStatus"):
        from rentcycle import models
        return getattr(models, name)

    if name in ("RentcycleError", "TransitionError", "Unauthorized", "GuardFailed",
                "InvalidPayload", "Conflict", "NotFound", "SideEffectDeferred",
                "StoreError", "InvariantViolation"):
        from rentcycle import errors
        return getattr(errors, name)

    if name == "RentalStore":
        from rentcycle.store import RentalStore
        return RentalStore

    if name in ("TransitionProcessor", "TransitionResult"):
        from rentcycle import processor
        return getattr(processor, name)

    if name in ("ScheduledActivator", "ActivationReport"):
        from rentcycle import activator
        return getattr(activator, name)

    if name in ("ChangeFeed", "RecordView", "Subscription"):
        from rentcycle import feed
        return getattr(feed, name)

    if name in ("NoticeDispatcher", "Notice", "LoggingNoticeSink"):
        from rentcycle import notices
        return getattr(notices, name)

    if name == "InspectionDesk":
        from rentcycle.inspections import InspectionDesk
        return InspectionDesk

    if name in ("get_config", "get_config_manager", "ConfigManager"):
        from rentcycle import config
        return getattr(config, name)

    raise AttributeError(f"module 'rentcycle' has no attribute '{name}'")


__all__ = [
    "__version__",
    # States
    "RentalStatus",
    "Command",
    "ActorRole",
    "Guard",
    "TransitionRule",
    "TRANSITION_TABLE",
    "MILESTONES",
    "is_legal",
    "rule_for",
    "roles_for",
    # Models
    "Actor",
    "RentalRecord",
    "HandoffInspection",
    "DamageClaim",
    "LedgerEntry",
    "PaymentCapture",
    "RentalEvent",
    "InspectionDirection",
    "ClaimOutcome",
    "LedgerKind",
    "PaymentStatus",
    # Errors
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
    # Engine
    "RentalStore",
    "TransitionProcessor",
    "TransitionResult",
    "ScheduledActivator",
    "ActivationReport",
    "ChangeFeed",
    "RecordView",
    "Subscription",
    "NoticeDispatcher",
    "Notice",
    "LoggingNoticeSink",
    "InspectionDesk",
    # Config
    "get_config",
    "get_config_manager",
    "ConfigManager",
]
