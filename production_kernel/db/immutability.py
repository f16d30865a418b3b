"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

A finalized QC record is the evidence behind a batch's gate status and its
approved/rejected quantities.  If it could be edited after the fact, the
batch counters derived from it would silently stop matching their source.
Audit events are the tamper-evident trail and must never change either.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity        | When Immutable                    | Why
--------------|-----------------------------------|-------------------------------
QCRecordModel | After finalized_at is set         | Gate state is derived from it
AuditEvent    | ALWAYS (from creation)            | Audit trail is append-only

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at/updated_by_id may still change: they are bookkeeping
   metadata, not inspection data.

2. "WAS finalized", not "IS finalized": the finalizing UPDATE itself sets
   finalized_at, so we look at attribute history and only block changes
   once the value already stored was non-null.

3. Inline model imports avoid a db -> models import cycle.

===============================================================================
USAGE
===============================================================================

    from production_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from production_kernel.exceptions import ImmutabilityViolationError
from production_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _was_finalized(target) -> bool:
    history = get_history(target, "finalized_at")
    if history.deleted:
        return history.deleted[0] is not None
    if not history.added:
        return target.finalized_at is not None
    return False


def _check_qc_record_immutability(mapper, connection, target):
    """Block any field change on a QC record that was already finalized."""
    if not _was_finalized(target):
        return

    for attr in inspect(target).attrs:
        if attr.key in _METADATA_FIELDS:
            continue
        if attr.history.has_changes():
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": "QCRecord",
                    "entity_id": str(target.id),
                    "operation": "UPDATE",
                    "field": attr.key,
                },
            )
            raise ImmutabilityViolationError(
                entity_type="QCRecord",
                entity_id=str(target.id),
                reason=f"Cannot modify field '{attr.key}' on finalized QC record",
            )


def _check_qc_record_delete(mapper, connection, target):
    """Block deletion of a finalized QC record."""
    if target.finalized_at is None:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "QCRecord",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="QCRecord",
        entity_id=str(target.id),
        reason="Finalized QC records cannot be deleted",
    )


def _check_audit_event_immutability(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEvent",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEvent",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events cannot be deleted",
    )


def _listeners():
    from production_kernel.models.audit_event import AuditEvent
    from production_kernel.models.qc_record import QCRecordModel

    return (
        (QCRecordModel, "before_update", _check_qc_record_immutability),
        (QCRecordModel, "before_delete", _check_qc_record_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after all models are imported but before any database
    operations begin.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that deliberately violate immutability.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
