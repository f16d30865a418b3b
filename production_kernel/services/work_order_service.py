"""
WorkOrderService -- transaction-owning facade over the batch lifecycle kernel.

Responsibility:
    Single entry point for callers (order intake, shop floor terminals, QC
    stations, dispatch desk).  Each public mutating method is one database
    transaction: it takes the work order row lock, delegates to the kernel
    services, recomputes the work order aggregates and commits.

Architecture position:
    Kernel > Services -- the only kernel class that calls
    ``session.commit()`` / ``session.rollback()``.  Every other service
    flushes into the transaction opened here.

Invariants enforced:
    - Lock order: work order row first, then batch row.
    - Rollup consistency: ``RollupService.recompute`` runs at the end of
      every mutation, inside the same transaction.
    - A completed work order accepts no new production, quantity revision
      or dispatch cancellation.

Failure modes:
    - Any ProductionKernelError raised below rolls the transaction back and
      propagates unchanged.
    - IntegrityError and lock-contention OperationalError are rolled back and
      re-raised as ConcurrencyConflictError.

Audit relevance:
    Each transaction runs under a fresh ``correlation_id`` bound into
    LogContext, so every log line and audit event of one call can be joined.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import (
    BatchStatusView,
    CompletionCheck,
    DispatchDecision,
    LifecyclePolicy,
    PackableQuantity,
    WorkOrderStatusView,
)
from production_kernel.domain.lifecycle import CompositeStatus, GateType, QCResult
from production_kernel.exceptions import (
    BatchNotFoundError,
    ConcurrencyConflictError,
    DispatchNotFoundError,
    ValidationError,
    WorkOrderCompletedError,
)
from production_kernel.logging_config import LogContext, get_logger
from production_kernel.models.packing import CartonModel, DispatchModel
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.models.qc_record import QCRecordModel
from production_kernel.models.work_order import WorkOrderModel
from production_kernel.selectors.work_order_selector import WorkOrderSelector
from production_kernel.services.auditor_service import AuditorService
from production_kernel.services.batch_lifecycle_service import (
    SYSTEM_ACTOR_ID,
    BatchLifecycleService,
)
from production_kernel.services.dispatch_service import DispatchService
from production_kernel.services.locking import is_lock_contention, lock_work_order
from production_kernel.services.production_service import ProductionResult, ProductionService
from production_kernel.services.qc_gate_service import QCGateService
from production_kernel.services.rollup_service import RollupService, WorkOrderTotals

logger = get_logger("services.work_order")


class WorkOrderService:
    """
    Facade owning the transaction boundary of every kernel operation.

    Contract:
        A method either commits all of its effects (batch changes, QC
        sync, dispatch rows, audit events, recomputed aggregates) or none.

    Guarantees:
        - All kernel services share this facade's session, clock and
          auditor, so audit sequence numbers and timestamps are consistent
          within a transaction.

    Non-goals:
        - Does NOT retry on ConcurrencyConflictError; callers decide.
    """

    def __init__(
        self,
        session: Session,
        policy: LifecyclePolicy | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._policy = policy or LifecyclePolicy()
        self._clock = clock or SystemClock()

        self._auditor = AuditorService(session, self._clock)
        self._qc_gates = QCGateService(session, self._policy, self._clock, self._auditor)
        self._lifecycle = BatchLifecycleService(
            session, self._policy, self._clock, self._auditor, self._qc_gates
        )
        self._production = ProductionService(
            session, self._lifecycle, self._qc_gates, self._policy, self._clock
        )
        self._dispatch = DispatchService(session, self._policy, self._clock, self._auditor)
        self._rollup = RollupService(session, self._clock, self._auditor)
        self._selector = WorkOrderSelector(session)

    @property
    def auditor(self) -> AuditorService:
        return self._auditor

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str, **log_fields) -> Iterator[None]:
        with LogContext.bind(
            correlation_id=uuid4(),
            operation=operation,
            work_order_id=log_fields.get("work_order_id"),
            batch_id=log_fields.get("batch_id"),
            actor_id=log_fields.get("actor_id"),
        ):
            try:
                yield
                self._session.commit()
            except IntegrityError as exc:
                self._rollback(operation, exc)
                raise ConcurrencyConflictError(
                    "WorkOrder",
                    log_fields.get("work_order_id") or "unknown",
                    f"integrity conflict during {operation}",
                ) from exc
            except OperationalError as exc:
                self._rollback(operation, exc)
                if is_lock_contention(exc):
                    raise ConcurrencyConflictError(
                        "WorkOrder",
                        log_fields.get("work_order_id") or "unknown",
                        f"lock contention during {operation}",
                    ) from exc
                raise
            except Exception as exc:
                self._rollback(operation, exc)
                raise

    def _rollback(self, operation: str, exc: Exception) -> None:
        self._session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={
                "operation": operation,
                "error_code": getattr(exc, "code", type(exc).__name__),
            },
            exc_info=exc,
        )

    def _lock_open_work_order(self, work_order_id: UUID, action: str) -> WorkOrderModel:
        work_order = lock_work_order(
            self._session, work_order_id, nowait=self._policy.lock_nowait
        )
        if work_order.is_complete:
            raise WorkOrderCompletedError(work_order.id, action)
        return work_order

    def _batch_work_order_id(self, batch_id: UUID) -> UUID:
        batch = self._session.get(ProductionBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch.work_order_id

    # ------------------------------------------------------------------
    # Work orders
    # ------------------------------------------------------------------

    def create_work_order(
        self,
        wo_number: str,
        requested_quantity: int,
        actor_id: UUID,
        due_date: date | None = None,
        item_code: str | None = None,
    ) -> UUID:
        """
        Register a work order from order intake.

        Raises:
            ValidationError: Non-positive quantity, empty or duplicate number.
            ConcurrencyConflictError: Same number inserted concurrently.
        """
        if requested_quantity <= 0:
            raise ValidationError(
                f"Requested quantity must be positive, got {requested_quantity}",
                field="requested_quantity",
            )
        if not wo_number or not wo_number.strip():
            raise ValidationError("Work order number is required", field="wo_number")

        with self._transaction("create_work_order", actor_id=actor_id):
            existing = self._session.execute(
                select(WorkOrderModel.id).where(WorkOrderModel.wo_number == wo_number.strip())
            ).scalar_one_or_none()
            if existing is not None:
                raise ValidationError(
                    f"Work order {wo_number.strip()} already exists", field="wo_number"
                )
            work_order = WorkOrderModel(
                wo_number=wo_number.strip(),
                item_code=item_code,
                requested_quantity=requested_quantity,
                due_date=due_date,
                produced_qty=0,
                qc_approved_qty=0,
                qc_rejected_qty=0,
                packed_qty=0,
                dispatched_qty=0,
                remaining_qty=requested_quantity,
                composite_status=CompositeStatus.PENDING.value,
                is_complete=False,
                created_by_id=actor_id,
            )
            self._session.add(work_order)
            self._session.flush()
            logger.info(
                "work_order_created",
                extra={
                    "work_order_id": str(work_order.id),
                    "wo_number": work_order.wo_number,
                    "requested_quantity": requested_quantity,
                },
            )
        return work_order.id

    def revise_quantity(
        self,
        work_order_id: UUID,
        new_quantity: int,
        actor_id: UUID,
    ) -> WorkOrderTotals:
        """
        Change the requested quantity of an open work order.

        Existing batches keep their ``batch_quantity``; the next batch is
        sized from the revised quantity.

        Raises:
            ValidationError: Non-positive quantity.
            WorkOrderCompletedError: Work order already complete.
        """
        if new_quantity <= 0:
            raise ValidationError(
                f"Requested quantity must be positive, got {new_quantity}",
                field="requested_quantity",
            )
        with self._transaction(
            "revise_quantity", work_order_id=work_order_id, actor_id=actor_id
        ):
            work_order = self._lock_open_work_order(work_order_id, "revise quantity")
            previous = work_order.requested_quantity
            work_order.requested_quantity = new_quantity
            work_order.updated_by_id = actor_id
            self._session.flush()
            logger.info(
                "work_order_quantity_revised",
                extra={
                    "work_order_id": str(work_order_id),
                    "previous_quantity": previous,
                    "new_quantity": new_quantity,
                },
            )
            totals = self._rollup.recompute(work_order_id, work_order=work_order)
        return totals

    # ------------------------------------------------------------------
    # Batches and production
    # ------------------------------------------------------------------

    def get_or_create_current_batch(
        self,
        work_order_id: UUID,
        actor_id: UUID | None = None,
    ) -> UUID:
        """Return the batch new production belongs to, creating it if a trigger applies."""
        with self._transaction(
            "get_or_create_current_batch", work_order_id=work_order_id, actor_id=actor_id
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            batch_id = self._lifecycle.get_or_create_current_batch(
                work_order_id, actor_id or SYSTEM_ACTOR_ID
            )
            self._rollup.recompute(work_order_id, work_order=work_order)
        return batch_id

    def record_production(
        self,
        work_order_id: UUID,
        ok_quantity: int,
        rejected_quantity: int,
        actor_id: UUID,
        logged_at: datetime | None = None,
    ) -> ProductionResult:
        """
        Log good and rejected pieces against the current batch.

        Raises:
            ValidationError: Malformed quantities.
            WorkOrderCompletedError: Work order already complete.
            GateNotSatisfiedError: Clearance required and missing.
        """
        ProductionService.validate_quantities(ok_quantity, rejected_quantity)
        with self._transaction(
            "record_production", work_order_id=work_order_id, actor_id=actor_id
        ):
            work_order = self._lock_open_work_order(work_order_id, "record production")
            result = self._production.record_production(
                work_order_id, ok_quantity, rejected_quantity, actor_id, logged_at
            )
            self._rollup.recompute(work_order_id, work_order=work_order)
        return result

    def mark_batch_production_complete(
        self,
        batch_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> BatchStatusView:
        work_order_id = self._batch_work_order_id(batch_id)
        with self._transaction(
            "mark_batch_production_complete",
            work_order_id=work_order_id,
            batch_id=batch_id,
            actor_id=actor_id,
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            batch = self._lifecycle.mark_production_complete(batch_id, actor_id, reason)
            self._rollup.recompute(work_order_id, work_order=work_order)
            view = BatchStatusView.from_model(
                batch, packed_qty=self._dispatch.packed_quantity(batch.id)
            )
        return view

    def close_batch(self, batch_id: UUID, actor_id: UUID, reason: str) -> BatchStatusView:
        """Manually close an open batch; the next production event resumes in a new one."""
        work_order_id = self._batch_work_order_id(batch_id)
        with self._transaction(
            "close_batch", work_order_id=work_order_id, batch_id=batch_id, actor_id=actor_id
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            batch = self._lifecycle.close_batch(batch_id, actor_id, reason)
            self._rollup.recompute(work_order_id, work_order=work_order)
            view = BatchStatusView.from_model(
                batch, packed_qty=self._dispatch.packed_quantity(batch.id)
            )
        return view

    # ------------------------------------------------------------------
    # QC
    # ------------------------------------------------------------------

    def open_qc_record(
        self,
        work_order_id: UUID,
        batch_id: UUID | None,
        gate_type: GateType,
        actor_id: UUID,
    ) -> UUID:
        """
        Return the open QC record for a gate, creating a pending one.

        ``batch_id`` may be None for inspections not tied to a batch; such
        records never change any batch.
        """
        gate_type = GateType(gate_type)
        with self._transaction(
            "open_qc_record", work_order_id=work_order_id, batch_id=batch_id, actor_id=actor_id
        ):
            lock_work_order(self._session, work_order_id, nowait=self._policy.lock_nowait)
            if batch_id is not None and self._batch_work_order_id(batch_id) != work_order_id:
                raise ValidationError(
                    f"Batch {batch_id} does not belong to work order {work_order_id}",
                    field="batch_id",
                )
            record = self._qc_gates.open_record(work_order_id, batch_id, gate_type, actor_id)
        return record.id

    def record_qc_result(
        self,
        record_id: UUID,
        result: QCResult,
        inspected_quantity: int,
        approver_id: UUID,
        remarks: str | None = None,
    ) -> QCRecordModel:
        """
        Record an inspection outcome and synchronize the batch on finalization.

        Raises:
            QCRecordNotFoundError: Unknown record.
            ValidationError: Record already finalized or bad quantity.
            QuantityExceededError: Final pass/fail beyond produced quantity.
        """
        record = self._qc_gates.get_record(record_id)
        work_order_id = record.work_order_id
        with self._transaction(
            "record_qc_result",
            work_order_id=work_order_id,
            batch_id=record.batch_id,
            actor_id=approver_id,
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            record = self._qc_gates.record_result(
                record_id, result, inspected_quantity, approver_id, remarks
            )
            self._rollup.recompute(work_order_id, work_order=work_order)
        return record

    # ------------------------------------------------------------------
    # Packing and dispatch
    # ------------------------------------------------------------------

    def get_packable_quantity(self, batch_id: UUID) -> PackableQuantity:
        return self._dispatch.get_packable_quantity(batch_id)

    def pack_carton(
        self,
        batch_id: UUID,
        quantity: int,
        actor_id: UUID,
        carton_number: str | None = None,
    ) -> CartonModel:
        work_order_id = self._batch_work_order_id(batch_id)
        with self._transaction(
            "pack_carton", work_order_id=work_order_id, batch_id=batch_id, actor_id=actor_id
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            carton = self._dispatch.pack_carton(batch_id, quantity, actor_id, carton_number)
            self._rollup.recompute(work_order_id, work_order=work_order)
        return carton

    def validate_dispatch(
        self,
        batch_id: UUID,
        work_order_id: UUID,
        quantity: int,
    ) -> DispatchDecision:
        """Read-only verdict; nothing is locked or written."""
        return self._dispatch.validate_dispatch(batch_id, work_order_id, quantity)

    def dispatch(
        self,
        batch_id: UUID,
        work_order_id: UUID,
        quantity: int,
        actor_id: UUID,
        carton_id: UUID | None = None,
        reference: str | None = None,
    ) -> DispatchModel:
        """
        Ship packed, approved pieces of one batch.

        Raises:
            BatchWorkOrderMismatchError, GateNotSatisfiedError,
            QuantityExceededError, ValidationError: see DispatchService.
        """
        with self._transaction(
            "dispatch", work_order_id=work_order_id, batch_id=batch_id, actor_id=actor_id
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            dispatch = self._dispatch.create_dispatch(
                batch_id, work_order_id, quantity, actor_id, carton_id, reference
            )
            self._rollup.recompute(work_order_id, work_order=work_order)
        return dispatch

    def cancel_dispatch(self, dispatch_id: UUID, actor_id: UUID) -> WorkOrderTotals:
        """
        Reverse a dispatch.

        Raises:
            DispatchNotFoundError: Unknown dispatch.
            WorkOrderCompletedError: Work order already complete.
            ConsistencyViolation: The batch counter drifted from its
                dispatch rows.
        """
        dispatch = self._session.get(DispatchModel, dispatch_id)
        if dispatch is None:
            raise DispatchNotFoundError(dispatch_id)
        work_order_id = dispatch.work_order_id
        with self._transaction(
            "cancel_dispatch",
            work_order_id=work_order_id,
            batch_id=dispatch.batch_id,
            actor_id=actor_id,
        ):
            work_order = self._lock_open_work_order(work_order_id, "cancel dispatch")
            self._dispatch.cancel_dispatch(dispatch_id, actor_id)
            totals = self._rollup.recompute(work_order_id, work_order=work_order)
        return totals

    # ------------------------------------------------------------------
    # Rollup and completion
    # ------------------------------------------------------------------

    def recompute(self, work_order_id: UUID) -> WorkOrderTotals:
        with self._transaction("recompute", work_order_id=work_order_id):
            totals = self._rollup.recompute(work_order_id)
        return totals

    def check_completion(self, work_order_id: UUID) -> CompletionCheck:
        return self._rollup.check_completion(work_order_id)

    def mark_complete(self, work_order_id: UUID, actor_id: UUID) -> WorkOrderStatusView:
        """
        Mark a work order complete.

        Raises:
            CompletionBlockedError: Blockers remain; nothing is written.
        """
        with self._transaction(
            "mark_complete", work_order_id=work_order_id, actor_id=actor_id
        ):
            work_order = lock_work_order(
                self._session, work_order_id, nowait=self._policy.lock_nowait
            )
            self._rollup.mark_complete(work_order_id, actor_id, work_order=work_order)
        return self._selector.get_work_order_status(work_order_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_work_order_status(self, work_order_id: UUID) -> WorkOrderStatusView:
        return self._selector.get_work_order_status(work_order_id)

    def get_batch_statuses(self, work_order_id: UUID) -> list[BatchStatusView]:
        return self._selector.get_batch_statuses(work_order_id)

    def remaining_to_produce(self, work_order_id: UUID) -> int:
        return self._lifecycle.remaining_to_produce(work_order_id)
