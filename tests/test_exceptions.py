"""Typed exception hierarchy: codes, structured data and API payloads."""

from uuid import uuid4

import pytest

from production_kernel.exceptions import (
    AuditChainBrokenError,
    AuditError,
    BatchNotFoundError,
    BatchWorkOrderMismatchError,
    CompletionBlockedError,
    ConcurrencyConflictError,
    ConsistencyViolation,
    DispatchNotFoundError,
    GateNotSatisfiedError,
    ImmutabilityError,
    ImmutabilityViolationError,
    InvalidStateTransitionError,
    NotFoundError,
    ProductionKernelError,
    QCRecordNotFoundError,
    QuantityExceededError,
    ValidationError,
    WorkOrderCompletedError,
    WorkOrderNotFoundError,
    error_payload,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_class, parent",
        [
            (BatchWorkOrderMismatchError, ValidationError),
            (InvalidStateTransitionError, ValidationError),
            (WorkOrderNotFoundError, NotFoundError),
            (BatchNotFoundError, NotFoundError),
            (QCRecordNotFoundError, NotFoundError),
            (DispatchNotFoundError, NotFoundError),
            (AuditChainBrokenError, AuditError),
            (ImmutabilityViolationError, ImmutabilityError),
            (ConsistencyViolation, ProductionKernelError),
        ],
    )
    def test_parent(self, exc_class, parent):
        assert issubclass(exc_class, parent)
        assert issubclass(exc_class, ProductionKernelError)

    def test_not_builtin_value_errors(self):
        assert not issubclass(ValidationError, ValueError)
        assert not issubclass(ConsistencyViolation, ValidationError)


class TestCodes:
    @pytest.mark.parametrize(
        "exc, code",
        [
            (ValidationError("bad"), "VALIDATION_ERROR"),
            (BatchWorkOrderMismatchError(uuid4(), uuid4()), "VALIDATION_ERROR"),
            (BatchNotFoundError(uuid4()), "NOT_FOUND"),
            (QuantityExceededError("too many", requested=5, available=1), "QUANTITY_EXCEEDED"),
            (ConcurrencyConflictError("WorkOrder", uuid4()), "CONCURRENCY_CONFLICT"),
            (ConsistencyViolation("WorkOrder", uuid4(), ["x"]), "CONSISTENCY_VIOLATION"),
            (CompletionBlockedError(uuid4(), ["No quantity packed yet"]), "COMPLETION_BLOCKED"),
            (WorkOrderCompletedError(uuid4(), "record production"), "WORK_ORDER_COMPLETED"),
            (AuditChainBrokenError("e", "a", "b"), "AUDIT_CHAIN_BROKEN"),
            (ImmutabilityViolationError("AuditEvent", "e", "no"), "IMMUTABILITY_VIOLATION"),
        ],
    )
    def test_code(self, exc, code):
        assert exc.code == code


class TestMessages:
    def test_gate_message_lists_blocking_gates_only(self):
        exc = GateNotSatisfiedError(
            batch_id=uuid4(),
            batch_number=2,
            gate_statuses={"material": "passed", "first_piece": "failed", "final": "pending"},
            approved_quantity=0,
            batch_quantity=40,
        )
        assert str(exc) == (
            "Cannot dispatch: batch #2 first-piece QC is failed, final QC is pending, "
            "0 of 40 ordered approved"
        )

    def test_gate_message_action(self):
        exc = GateNotSatisfiedError(
            batch_id=uuid4(),
            batch_number=1,
            gate_statuses={"material": "pending", "first_piece": "passed", "final": "pending"},
            approved_quantity=0,
            batch_quantity=100,
            action="record production",
        )
        assert str(exc).startswith("Cannot record production: batch #1 material QC is pending")

    def test_completion_message(self):
        exc = CompletionBlockedError(uuid4(), ["A", "B"])
        assert str(exc) == "Cannot mark WO complete. Blockers: A, B"

    def test_conflict_detail(self):
        exc = ConcurrencyConflictError("WorkOrder", "wo-1", "lock contention")
        assert str(exc) == "Concurrent modification of WorkOrder wo-1: lock contention"


class TestPayload:
    def test_quantity_payload(self):
        batch_id = uuid4()
        payload = error_payload(
            QuantityExceededError("too many", requested=150, available=100, batch_id=batch_id)
        )
        assert payload == {
            "code": "QUANTITY_EXCEEDED",
            "message": "too many",
            "requested": 150,
            "available": 100,
            "batch_id": str(batch_id),
        }

    def test_blockers_payload(self):
        payload = error_payload(CompletionBlockedError("wo", ["No quantity packed yet"]))
        assert payload["blockers"] == ["No quantity packed yet"]
        assert payload["work_order_id"] == "wo"
