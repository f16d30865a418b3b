"""
BatchLifecycleService -- segments a work order's production into batches.

Responsibility:
    Answers "which batch should new production be attributed to?" and
    creates the next batch when a trigger reason applies.  Also applies the
    explicit batch transitions: production complete and manual close.

Architecture position:
    Kernel > Services -- imperative shell around the pure trigger rules in
    ``domain.lifecycle``.

Invariants enforced:
    - Batch number contiguity: numbers are allocated under the work order
      row lock as ``max + 1``; the unique (work_order_id, batch_number)
      constraint turns a lost race into ConcurrencyConflictError.
    - Single open batch: the previous batch is closed in the same
      transaction that creates its successor.
    - No gate inheritance: every new batch starts with all gates pending,
      all quantities zero and both eligibility flags false.
    - Closed states are terminal.

Failure modes:
    - WorkOrderNotFoundError / BatchNotFoundError.
    - ConcurrencyConflictError on lock contention or a duplicate batch number.
    - InvalidStateTransitionError when closing an already-closed batch.

Audit relevance:
    BATCH_CREATED, BATCH_CLOSED and BATCH_PRODUCTION_COMPLETE audit events.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import LifecyclePolicy
from production_kernel.domain.lifecycle import (
    BatchState,
    GateStatus,
    GateType,
    LatestBatchFacts,
    TriggerReason,
    can_transition,
    remaining_to_produce,
    select_trigger_reason,
)
from production_kernel.exceptions import (
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    WorkOrderNotFoundError,
)
from production_kernel.logging_config import get_logger
from production_kernel.models.packing import DispatchModel
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.models.production_log import ProductionLogModel
from production_kernel.models.work_order import WorkOrderModel
from production_kernel.services.auditor_service import AuditorService
from production_kernel.services.locking import lock_batch, lock_work_order
from production_kernel.services.qc_gate_service import QCGateService

logger = get_logger("services.batch_lifecycle")

# Stand-in actor when the kernel itself spawns a batch without a caller identity
SYSTEM_ACTOR_ID = UUID(int=0)


class BatchLifecycleService:
    """
    Batch creation, supersession and explicit closing.

    Contract:
        ``get_or_create_current_batch`` is deterministic: with no
        intervening event, repeated calls return the same batch id.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT attribute production quantities (ProductionService).
    """

    def __init__(
        self,
        session: Session,
        policy: LifecyclePolicy | None = None,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        qc_gates: QCGateService | None = None,
    ):
        self._session = session
        self._policy = policy or LifecyclePolicy()
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._qc_gates = qc_gates or QCGateService(
            session, self._policy, self._clock, self._auditor
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def latest_batch(self, work_order_id: UUID) -> ProductionBatchModel | None:
        return self._session.execute(
            select(ProductionBatchModel)
            .where(ProductionBatchModel.work_order_id == work_order_id)
            .order_by(ProductionBatchModel.batch_number.desc())
            .limit(1)
        ).scalar_one_or_none()

    def total_produced(self, work_order_id: UUID) -> int:
        return int(
            self._session.execute(
                select(func.coalesce(func.sum(ProductionBatchModel.produced_qty), 0))
                .where(ProductionBatchModel.work_order_id == work_order_id)
            ).scalar_one()
        )

    def _last_log_at(self, batch_id: UUID):
        return self._session.execute(
            select(ProductionLogModel.logged_at)
            .where(ProductionLogModel.batch_id == batch_id)
            .order_by(ProductionLogModel.logged_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _last_dispatch_at(self, batch_id: UUID):
        return self._session.execute(
            select(DispatchModel.dispatched_at)
            .where(DispatchModel.batch_id == batch_id)
            .order_by(DispatchModel.dispatched_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def remaining_to_produce(self, work_order_id: UUID) -> int:
        """Live ``max(0, requested - total produced)``."""
        work_order = self._session.get(WorkOrderModel, work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)
        return remaining_to_produce(
            work_order.requested_quantity, self.total_produced(work_order_id)
        )

    # ------------------------------------------------------------------
    # Current batch
    # ------------------------------------------------------------------

    def get_or_create_current_batch(
        self,
        work_order_id: UUID,
        actor_id: UUID | None = None,
    ) -> UUID:
        """
        Return the batch that new production for ``work_order_id`` belongs to.

        Preconditions:
            - The work order exists.
        Postconditions:
            - At most one batch of the work order is open.
            - If a batch was created, its predecessor (if any) is closed
              and both changes are flushed in the caller's transaction.

        Raises:
            WorkOrderNotFoundError: Unknown work order.
            ConcurrencyConflictError: Lock contention or batch number race.
        """
        actor_id = actor_id or SYSTEM_ACTOR_ID
        work_order = lock_work_order(
            self._session, work_order_id, nowait=self._policy.lock_nowait
        )
        latest = self.latest_batch(work_order_id)

        if latest is None:
            batch = self._create_batch(
                work_order, 1, TriggerReason.INITIAL, work_order.requested_quantity, None, actor_id
            )
            return batch.id

        total_produced = self.total_produced(work_order_id)
        decision = select_trigger_reason(
            LatestBatchFacts(
                state=latest.batch_state,
                last_log_at=self._last_log_at(latest.id),
                last_dispatch_at=self._last_dispatch_at(latest.id),
                total_produced=total_produced,
                requested_quantity=work_order.requested_quantity,
            ),
            now=self._clock.now(),
            gap_threshold=timedelta(days=self._policy.gap_threshold_days),
        )

        if not decision.spawns_batch:
            logger.debug(
                "current_batch_reused",
                extra={
                    "batch_id": str(latest.id),
                    "batch_number": latest.batch_number,
                    "state": latest.state,
                    "detail": decision.detail,
                },
            )
            return latest.id

        if latest.is_open:
            self._close(latest, BatchState.CLOSED_SUPERSEDED, decision.reason.value, actor_id)

        batch = self._create_batch(
            work_order,
            latest.batch_number + 1,
            decision.reason,
            remaining_to_produce(work_order.requested_quantity, total_produced),
            latest.id,
            actor_id,
        )
        logger.info(
            "batch_superseded",
            extra={
                "previous_batch_id": str(latest.id),
                "batch_id": str(batch.id),
                "trigger_reason": decision.reason.value,
                "detail": decision.detail,
            },
        )
        return batch.id

    def _create_batch(
        self,
        work_order: WorkOrderModel,
        batch_number: int,
        reason: TriggerReason,
        batch_quantity: int,
        previous_batch_id: UUID | None,
        actor_id: UUID,
    ) -> ProductionBatchModel:
        pending = GateStatus.PENDING.value
        batch = ProductionBatchModel(
            work_order_id=work_order.id,
            batch_number=batch_number,
            trigger_reason=reason.value,
            state=BatchState.OPEN.value,
            started_at=self._clock.now(),
            previous_batch_id=previous_batch_id,
            batch_quantity=batch_quantity,
            produced_qty=0,
            production_rejected_qty=0,
            qc_approved_qty=0,
            qc_rejected_qty=0,
            dispatched_qty=0,
            material_qc_status=pending,
            first_piece_qc_status=pending,
            final_qc_status=pending,
            production_allowed=False,
            dispatch_allowed=False,
            production_complete=False,
            created_by_id=actor_id,
        )
        self._session.add(batch)
        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "batch_number_conflict",
                extra={"work_order_id": str(work_order.id), "batch_number": batch_number},
            )
            raise ConcurrencyConflictError(
                "WorkOrder",
                work_order.id,
                f"batch #{batch_number} was created concurrently",
            ) from exc

        self._auditor.record_batch_created(
            batch_id=batch.id,
            work_order_id=work_order.id,
            batch_number=batch_number,
            trigger_reason=reason.value,
            batch_quantity=batch_quantity,
            previous_batch_id=previous_batch_id,
            actor_id=actor_id,
        )
        if self._policy.auto_open_qc_records:
            self._qc_gates.open_record(work_order.id, batch.id, GateType.MATERIAL, actor_id)
            self._qc_gates.open_record(work_order.id, batch.id, GateType.FIRST_PIECE, actor_id)

        logger.info(
            "batch_created",
            extra={
                "work_order_id": str(work_order.id),
                "batch_id": str(batch.id),
                "batch_number": batch_number,
                "trigger_reason": reason.value,
                "batch_quantity": batch_quantity,
            },
        )
        return batch

    # ------------------------------------------------------------------
    # Explicit transitions
    # ------------------------------------------------------------------

    def _close(
        self,
        batch: ProductionBatchModel,
        target: BatchState,
        reason: str,
        actor_id: UUID,
    ) -> None:
        current = batch.batch_state
        if not can_transition(current, target):
            raise InvalidStateTransitionError(batch.id, current.value, target.value)

        batch.state = target.value
        if batch.ended_at is None:
            batch.ended_at = self._clock.now()
        batch.close_reason = reason
        batch.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_batch_closed(
            batch_id=batch.id,
            batch_number=batch.batch_number,
            new_state=target.value,
            reason=reason,
            actor_id=actor_id,
        )
        logger.info(
            "batch_closed",
            extra={
                "batch_id": str(batch.id),
                "batch_number": batch.batch_number,
                "from_state": current.value,
                "to_state": target.value,
                "reason": reason,
            },
        )

    def mark_production_complete(
        self,
        batch_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ProductionBatchModel:
        """
        Stamp a batch production complete: open -> closed_complete.

        The stamped quantity is the batch's produced quantity at that moment.

        Raises:
            BatchNotFoundError: Unknown batch.
            InvalidStateTransitionError: Batch already closed.
        """
        batch = lock_batch(self._session, batch_id, nowait=self._policy.lock_nowait)
        current = batch.batch_state
        if not can_transition(current, BatchState.CLOSED_COMPLETE):
            raise InvalidStateTransitionError(
                batch.id, current.value, BatchState.CLOSED_COMPLETE.value
            )

        now = self._clock.now()
        batch.production_complete = True
        batch.production_complete_qty = batch.produced_qty
        batch.production_complete_by_id = actor_id
        batch.production_complete_reason = reason
        batch.production_complete_at = now
        self._close(batch, BatchState.CLOSED_COMPLETE, reason or "production complete", actor_id)

        self._auditor.record_production_complete(
            batch_id=batch.id,
            batch_number=batch.batch_number,
            produced_qty=batch.produced_qty,
            reason=reason,
            actor_id=actor_id,
        )
        return batch

    def close_batch(
        self,
        batch_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> ProductionBatchModel:
        """
        Manually close an open batch with no successor yet.

        The next production event for the work order spawns a ``resumed``
        batch.

        Raises:
            BatchNotFoundError: Unknown batch.
            InvalidStateTransitionError: Batch already closed.
        """
        batch = lock_batch(self._session, batch_id, nowait=self._policy.lock_nowait)
        self._close(batch, BatchState.CLOSED_SUPERSEDED, reason, actor_id)
        return batch
