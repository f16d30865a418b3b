"""
Typed Exception Hierarchy for the Production Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers at the edge (API handlers, shop-floor terminals, background jobs)
need to react to a rejected dispatch differently from a lost lock race.
Parsing message strings for that is fragile, so every failure the kernel
can raise is:

  1. A TYPED exception class (catch by type, not message)
  2. Carrying a CODE attribute (machine-readable, API-safe)
  3. Carrying structured DATA (batch id, requested quantity, blockers...)

Example:
    try:
        service.dispatch(batch_id, work_order_id, quantity, actor_id)
    except QuantityExceededError as e:
        api_response(code=e.code, available=e.available)
    except GateNotSatisfiedError as e:
        api_response(code=e.code, gates=e.gate_statuses)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ProductionKernelError (base)
    |
    +-- ValidationError
    |   +-- BatchWorkOrderMismatchError
    |   +-- InvalidStateTransitionError
    |
    +-- NotFoundError
    |   +-- WorkOrderNotFoundError
    |   +-- BatchNotFoundError
    |   +-- QCRecordNotFoundError
    |   +-- DispatchNotFoundError
    |
    +-- GateNotSatisfiedError
    +-- QuantityExceededError
    +-- ConcurrencyConflictError
    +-- ConsistencyViolation
    +-- CompletionBlockedError
    +-- WorkOrderCompletedError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                     | When Raised
-------------------------|-----------------------------------------------------
VALIDATION_ERROR         | Malformed input, wrong work order, illegal state change
NOT_FOUND                | Referenced work order / batch / record missing
GATE_NOT_SATISFIED       | QC gates do not permit the requested action
QUANTITY_EXCEEDED        | Quantity beyond packed / approved / produced totals
CONCURRENCY_CONFLICT     | Lock contention or uniqueness race lost
CONSISTENCY_VIOLATION    | Stored counters break a quantity invariant
COMPLETION_BLOCKED       | Work order completion requested with blockers
WORK_ORDER_COMPLETED     | Mutation attempted on a completed work order
AUDIT_CHAIN_BROKEN       | Audit hash chain validation failed
IMMUTABILITY_VIOLATION   | Update/delete of a finalized QC record or audit row

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Domain exceptions inherit from Exception, never from ValueError or
   RuntimeError, so they can be caught as a group without swallowing
   programming errors.

2. ConsistencyViolation is not a ValidationError: it means stored state is
   already wrong, not that the caller asked for something illegal.
"""

from typing import Any
from uuid import UUID


class ProductionKernelError(Exception):
    """Base exception for all production kernel errors."""

    code: str = "PRODUCTION_KERNEL_ERROR"


# Validation


class ValidationError(ProductionKernelError):
    """Input rejected before any state was touched."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class BatchWorkOrderMismatchError(ValidationError):
    """Batch does not belong to the work order named by the caller."""

    def __init__(self, batch_id: UUID | str, work_order_id: UUID | str):
        self.batch_id = str(batch_id)
        self.work_order_id = str(work_order_id)
        super().__init__(
            f"Batch {batch_id} does not belong to work order {work_order_id}",
            field="batch_id",
        )


class InvalidStateTransitionError(ValidationError):
    """Batch state machine rejected a transition."""

    def __init__(self, batch_id: UUID | str, from_state: str, to_state: str):
        self.batch_id = str(batch_id)
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Batch {batch_id} cannot move from {from_state} to {to_state}",
            field="state",
        )


# Not found


class NotFoundError(ProductionKernelError):
    """A referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: UUID | str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} {entity_id} not found")


class WorkOrderNotFoundError(NotFoundError):
    def __init__(self, work_order_id: UUID | str):
        super().__init__("WorkOrder", work_order_id)


class BatchNotFoundError(NotFoundError):
    def __init__(self, batch_id: UUID | str):
        super().__init__("ProductionBatch", batch_id)


class QCRecordNotFoundError(NotFoundError):
    def __init__(self, record_id: UUID | str):
        super().__init__("QCRecord", record_id)


class DispatchNotFoundError(NotFoundError):
    def __init__(self, dispatch_id: UUID | str):
        super().__init__("Dispatch", dispatch_id)


# Gates and quantities


class GateNotSatisfiedError(ProductionKernelError):
    """
    QC gates on a batch do not permit the requested action.

    Carries every gate status so callers can render which gate blocks.
    """

    code: str = "GATE_NOT_SATISFIED"

    def __init__(
        self,
        batch_id: UUID | str,
        batch_number: int,
        gate_statuses: dict[str, str],
        approved_quantity: int,
        batch_quantity: int,
        action: str = "dispatch",
    ):
        self.batch_id = str(batch_id)
        self.batch_number = batch_number
        self.gate_statuses = dict(gate_statuses)
        self.approved_quantity = approved_quantity
        self.batch_quantity = batch_quantity
        self.action = action
        blocking = ", ".join(
            f"{gate.replace('_', '-')} QC is {status}"
            for gate, status in gate_statuses.items()
            if status not in ("passed", "waived")
        )
        super().__init__(
            f"Cannot {action}: batch #{batch_number} {blocking}, "
            f"{approved_quantity} of {batch_quantity} ordered approved"
        )


class QuantityExceededError(ProductionKernelError):
    """Requested quantity exceeds what the counters allow."""

    code: str = "QUANTITY_EXCEEDED"

    def __init__(
        self,
        message: str,
        requested: int,
        available: int,
        batch_id: UUID | str | None = None,
    ):
        self.requested = requested
        self.available = available
        self.batch_id = str(batch_id) if batch_id is not None else None
        super().__init__(message)


# Concurrency and consistency


class ConcurrencyConflictError(ProductionKernelError):
    """Lost a lock or uniqueness race. Safe to retry."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: UUID | str, detail: str = ""):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.detail = detail
        message = f"Concurrent modification of {entity_type} {entity_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConsistencyViolation(ProductionKernelError):
    """
    Stored counters violate a quantity invariant.

    Raised instead of writing when a rollup or QC sync detects that the
    persisted state is already inconsistent.
    """

    code: str = "CONSISTENCY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: UUID | str, violations: list[str]):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.violations = list(violations)
        super().__init__(
            f"Consistency violation on {entity_type} {entity_id}: "
            + "; ".join(violations)
        )


# Completion


class CompletionBlockedError(ProductionKernelError):
    """Work order completion requested while blockers remain."""

    code: str = "COMPLETION_BLOCKED"

    def __init__(self, work_order_id: UUID | str, blockers: list[str]):
        self.work_order_id = str(work_order_id)
        self.blockers = list(blockers)
        super().__init__(
            "Cannot mark WO complete. Blockers: " + ", ".join(blockers)
        )


class WorkOrderCompletedError(ProductionKernelError):
    """Mutation attempted on a work order that is already complete."""

    code: str = "WORK_ORDER_COMPLETED"

    def __init__(self, work_order_id: UUID | str, action: str):
        self.work_order_id = str(work_order_id)
        self.action = action
        super().__init__(f"Work order {work_order_id} is complete; cannot {action}")


# Audit


class AuditError(ProductionKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Immutability


class ImmutabilityError(ProductionKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete a finalized QC record or an audit event."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


def error_payload(exc: ProductionKernelError) -> dict[str, Any]:
    """Render a kernel error as a flat, API-safe dict."""
    payload: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    for key, value in vars(exc).items():
        if not key.startswith("_"):
            payload[key] = value
    return payload
