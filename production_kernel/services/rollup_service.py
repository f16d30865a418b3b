"""
RollupService -- work order aggregates recomputed from source rows.

Responsibility:
    Recomputes a work order's produced / approved / rejected / packed /
    dispatched / remaining totals and its composite status as live sums
    over its batches, cartons and dispatch rows.  Evaluates and applies
    work order completion.

Architecture position:
    Kernel > Services -- imperative shell.  Called once at the end of
    every mutating transaction by the other kernel services.

Invariants enforced:
    - Rollup consistency: totals are never incremented piecemeal; each call
      recomputes from source rows, so calling it twice is harmless.
    - Before writing, every batch quantity invariant, the per-batch
      ``dispatched_qty == sum(dispatch rows)`` equality, batch number
      contiguity and the single-open-batch rule are verified.

Failure modes:
    - ConsistencyViolation: any verification failed.  Nothing is written;
      the owner of the transaction boundary rolls back.
    - CompletionBlockedError: mark_complete with blockers remaining.

Audit relevance:
    Work order completion appends a WORK_ORDER_COMPLETED audit event with
    the final totals.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import CompletionCheck
from production_kernel.domain.lifecycle import (
    BatchCompletionFacts,
    CompositeStatus,
    GateType,
    completion_blockers,
    derive_composite_status,
)
from production_kernel.exceptions import (
    CompletionBlockedError,
    ConsistencyViolation,
    WorkOrderNotFoundError,
)
from production_kernel.logging_config import get_logger
from production_kernel.models.packing import CartonModel, DispatchModel
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.models.work_order import WorkOrderModel
from production_kernel.services.auditor_service import AuditorService
from production_kernel.services.locking import lock_work_order

logger = get_logger("services.rollup")


@dataclass(frozen=True)
class WorkOrderTotals:
    produced_qty: int
    qc_approved_qty: int
    qc_rejected_qty: int
    packed_qty: int
    dispatched_qty: int
    remaining_qty: int
    composite_status: CompositeStatus
    open_batch_count: int
    batch_count: int

    def as_dict(self) -> dict[str, int]:
        return {
            "produced_qty": self.produced_qty,
            "qc_approved_qty": self.qc_approved_qty,
            "qc_rejected_qty": self.qc_rejected_qty,
            "packed_qty": self.packed_qty,
            "dispatched_qty": self.dispatched_qty,
            "remaining_qty": self.remaining_qty,
        }


class RollupService:
    """
    Recomputes work order aggregates and decides completion.

    Contract:
        ``recompute`` is idempotent and either writes a fully consistent
        set of aggregates or raises without writing.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    # ------------------------------------------------------------------
    # Source row queries
    # ------------------------------------------------------------------

    def _batches(self, work_order_id: UUID) -> list[ProductionBatchModel]:
        return list(
            self._session.execute(
                select(ProductionBatchModel)
                .where(ProductionBatchModel.work_order_id == work_order_id)
                .order_by(ProductionBatchModel.batch_number)
            ).scalars().all()
        )

    def _sum_by_batch(self, model, work_order_id: UUID) -> dict[UUID, int]:
        rows = self._session.execute(
            select(model.batch_id, func.coalesce(func.sum(model.quantity), 0))
            .where(model.work_order_id == work_order_id)
            .group_by(model.batch_id)
        ).all()
        return {batch_id: int(total) for batch_id, total in rows}

    def packed_by_batch(self, work_order_id: UUID) -> dict[UUID, int]:
        return self._sum_by_batch(CartonModel, work_order_id)

    def dispatched_by_batch(self, work_order_id: UUID) -> dict[UUID, int]:
        return self._sum_by_batch(DispatchModel, work_order_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        batches: list[ProductionBatchModel],
        packed: dict[UUID, int],
        dispatched: dict[UUID, int],
    ) -> list[str]:
        """Every broken invariant across a work order's batches."""
        violations: list[str] = []
        for expected_number, batch in enumerate(batches, start=1):
            if batch.batch_number != expected_number:
                violations.append(
                    f"batch numbers not contiguous: expected #{expected_number}, "
                    f"found #{batch.batch_number}"
                )
            violations.extend(batch.quantity_violations())
            rows_total = dispatched.get(batch.id, 0)
            if batch.dispatched_qty != rows_total:
                violations.append(
                    f"batch #{batch.batch_number}: dispatched_qty {batch.dispatched_qty} "
                    f"!= dispatch rows {rows_total}"
                )
            batch_packed = packed.get(batch.id, 0)
            if batch_packed > batch.qc_approved_qty:
                violations.append(
                    f"batch #{batch.batch_number}: packed {batch_packed} > "
                    f"approved {batch.qc_approved_qty}"
                )
            if batch.dispatched_qty > batch_packed:
                violations.append(
                    f"batch #{batch.batch_number}: dispatched {batch.dispatched_qty} > "
                    f"packed {batch_packed}"
                )
        open_count = sum(1 for b in batches if b.is_open)
        if open_count > 1:
            violations.append(f"{open_count} open batches")
        return violations

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def compute_totals(self, work_order: WorkOrderModel) -> WorkOrderTotals:
        """Live totals for a work order, verified but not written."""
        batches = self._batches(work_order.id)
        packed = self.packed_by_batch(work_order.id)
        dispatched = self.dispatched_by_batch(work_order.id)

        violations = self.verify(batches, packed, dispatched)
        if violations:
            logger.error(
                "rollup_consistency_violation",
                extra={"work_order_id": str(work_order.id), "violations": violations},
            )
            raise ConsistencyViolation("WorkOrder", work_order.id, violations)

        produced = sum(b.produced_qty for b in batches)
        approved = sum(b.qc_approved_qty for b in batches)
        rejected = sum(b.qc_rejected_qty for b in batches)
        shipped = sum(b.dispatched_qty for b in batches)
        packed_total = sum(packed.get(b.id, 0) for b in batches)
        open_count = sum(1 for b in batches if b.is_open)

        return WorkOrderTotals(
            produced_qty=produced,
            qc_approved_qty=approved,
            qc_rejected_qty=rejected,
            packed_qty=packed_total,
            dispatched_qty=shipped,
            remaining_qty=max(0, work_order.requested_quantity - shipped),
            composite_status=derive_composite_status(
                ordered=work_order.requested_quantity,
                produced=produced,
                approved=approved,
                rejected=rejected,
                dispatched=shipped,
                has_open_batch=open_count > 0,
            ),
            open_batch_count=open_count,
            batch_count=len(batches),
        )

    def recompute(
        self,
        work_order_id: UUID,
        work_order: WorkOrderModel | None = None,
    ) -> WorkOrderTotals:
        """
        Recompute and store the aggregates of one work order.

        Args:
            work_order_id: Work order to recompute.
            work_order: The already-locked row, if the caller holds it.

        Raises:
            ConsistencyViolation: Source rows break an invariant.
        """
        if work_order is None:
            work_order = lock_work_order(self._session, work_order_id)
        totals = self.compute_totals(work_order)

        previous_status = work_order.composite_status
        work_order.produced_qty = totals.produced_qty
        work_order.qc_approved_qty = totals.qc_approved_qty
        work_order.qc_rejected_qty = totals.qc_rejected_qty
        work_order.packed_qty = totals.packed_qty
        work_order.dispatched_qty = totals.dispatched_qty
        work_order.remaining_qty = totals.remaining_qty
        work_order.composite_status = totals.composite_status.value
        self._session.flush()

        logger.info(
            "rollup_recomputed",
            extra={
                "work_order_id": str(work_order.id),
                "composite_status": totals.composite_status.value,
                "previous_status": previous_status,
                **totals.as_dict(),
            },
        )
        return totals

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def check_completion(self, work_order_id: UUID) -> CompletionCheck:
        """Blockers preventing completion, evaluated on live rows."""
        work_order = self._session.get(WorkOrderModel, work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)
        return self._check(work_order)

    def _check(self, work_order: WorkOrderModel) -> CompletionCheck:
        batches = self._batches(work_order.id)
        packed = self.packed_by_batch(work_order.id)
        blockers = completion_blockers(
            batches=[
                BatchCompletionFacts(
                    state=b.batch_state,
                    final_status=b.gate_status(GateType.FINAL),
                )
                for b in batches
            ],
            total_produced=sum(b.produced_qty for b in batches),
            ordered=work_order.requested_quantity,
            total_packed=sum(packed.values()),
        )
        return CompletionCheck(
            work_order_id=work_order.id,
            can_complete=not blockers,
            blockers=tuple(blockers),
        )

    def mark_complete(
        self,
        work_order_id: UUID,
        actor_id: UUID,
        work_order: WorkOrderModel | None = None,
    ) -> WorkOrderModel:
        """
        Mark a work order complete (one-way).

        Marking an already-complete work order is a no-op.

        Raises:
            CompletionBlockedError: Blockers remain; carries the list.
            ConsistencyViolation: Aggregates cannot be recomputed soundly.
        """
        if work_order is None:
            work_order = lock_work_order(self._session, work_order_id)

        if work_order.is_complete:
            logger.info(
                "work_order_already_complete",
                extra={"work_order_id": str(work_order.id)},
            )
            return work_order

        totals = self.recompute(work_order.id, work_order=work_order)
        check = self._check(work_order)
        if not check.can_complete:
            logger.warning(
                "work_order_completion_blocked",
                extra={
                    "work_order_id": str(work_order.id),
                    "blockers": list(check.blockers),
                },
            )
            raise CompletionBlockedError(work_order.id, list(check.blockers))

        work_order.is_complete = True
        work_order.completed_at = self._clock.now()
        work_order.completed_by_id = actor_id
        work_order.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_work_order_completed(
            work_order_id=work_order.id,
            wo_number=work_order.wo_number,
            totals={
                "requested_quantity": work_order.requested_quantity,
                **totals.as_dict(),
            },
            actor_id=actor_id,
        )
        logger.info(
            "work_order_completed",
            extra={
                "work_order_id": str(work_order.id),
                "wo_number": work_order.wo_number,
                "dispatched_qty": totals.dispatched_qty,
            },
        )
        return work_order
