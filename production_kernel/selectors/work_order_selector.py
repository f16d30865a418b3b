"""
Module: production_kernel.selectors.work_order_selector
Responsibility: Read-only status views for reporting: work order totals and
    composite status, per-batch status, and dispatch history.
Architecture position: Kernel > Selectors.

Failure modes:
    - WorkOrderNotFoundError for an unknown work order id.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func, select

from production_kernel.domain.dtos import BatchStatusView, WorkOrderStatusView
from production_kernel.domain.lifecycle import BatchState
from production_kernel.exceptions import WorkOrderNotFoundError
from production_kernel.models.packing import CartonModel, DispatchModel
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.models.qc_record import QCRecordModel
from production_kernel.models.work_order import WorkOrderModel
from production_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class DispatchView:
    dispatch_id: UUID
    batch_id: UUID
    batch_number: int
    quantity: int
    dispatched_at: datetime
    reference: str | None


@dataclass(frozen=True)
class QCRecordView:
    record_id: UUID
    batch_id: UUID | None
    gate_type: str
    result: str
    inspected_quantity: int
    approver_id: UUID | None
    finalized_at: datetime | None


class WorkOrderSelector(BaseSelector):
    """Reporting queries over a work order and its batches."""

    def _work_order(self, work_order_id: UUID) -> WorkOrderModel:
        work_order = self.session.get(WorkOrderModel, work_order_id)
        if work_order is None:
            raise WorkOrderNotFoundError(work_order_id)
        return work_order

    def find_by_number(self, wo_number: str) -> WorkOrderStatusView | None:
        work_order_id = self.session.execute(
            select(WorkOrderModel.id).where(WorkOrderModel.wo_number == wo_number)
        ).scalar_one_or_none()
        if work_order_id is None:
            return None
        return self.get_work_order_status(work_order_id)

    def get_work_order_status(self, work_order_id: UUID) -> WorkOrderStatusView:
        """Stored totals as last written by the rollup, plus live batch counts."""
        work_order = self._work_order(work_order_id)
        batch_count, open_count = self.session.execute(
            select(
                func.count(ProductionBatchModel.id),
                func.coalesce(
                    func.sum(case((ProductionBatchModel.state == BatchState.OPEN.value, 1), else_=0)),
                    0,
                ),
            ).where(ProductionBatchModel.work_order_id == work_order_id)
        ).one()
        return WorkOrderStatusView.from_model(
            work_order,
            open_batch_count=int(open_count),
            batch_count=int(batch_count),
        )

    def get_batch_statuses(self, work_order_id: UUID) -> list[BatchStatusView]:
        """Every batch of the work order in batch number order."""
        self._work_order(work_order_id)
        batches = self.session.execute(
            select(ProductionBatchModel)
            .where(ProductionBatchModel.work_order_id == work_order_id)
            .order_by(ProductionBatchModel.batch_number)
        ).scalars().all()
        packed = dict(
            self.session.execute(
                select(CartonModel.batch_id, func.sum(CartonModel.quantity))
                .where(CartonModel.work_order_id == work_order_id)
                .group_by(CartonModel.batch_id)
            ).all()
        )
        return [
            BatchStatusView.from_model(batch, packed_qty=int(packed.get(batch.id) or 0))
            for batch in batches
        ]

    def get_current_batch(self, work_order_id: UUID) -> BatchStatusView | None:
        """The open batch, if any.  Does not create one."""
        for view in self.get_batch_statuses(work_order_id):
            if view.state is BatchState.OPEN:
                return view
        return None

    def list_dispatches(self, work_order_id: UUID) -> list[DispatchView]:
        rows = self.session.execute(
            select(DispatchModel, ProductionBatchModel.batch_number)
            .join(ProductionBatchModel, ProductionBatchModel.id == DispatchModel.batch_id)
            .where(DispatchModel.work_order_id == work_order_id)
            .order_by(DispatchModel.dispatched_at, ProductionBatchModel.batch_number)
        ).all()
        return [
            DispatchView(
                dispatch_id=dispatch.id,
                batch_id=dispatch.batch_id,
                batch_number=batch_number,
                quantity=dispatch.quantity,
                dispatched_at=dispatch.dispatched_at,
                reference=dispatch.reference,
            )
            for dispatch, batch_number in rows
        ]

    def list_qc_records(
        self,
        work_order_id: UUID,
        batch_id: UUID | None = None,
    ) -> list[QCRecordView]:
        stmt = select(QCRecordModel).where(QCRecordModel.work_order_id == work_order_id)
        if batch_id is not None:
            stmt = stmt.where(QCRecordModel.batch_id == batch_id)
        records = self.session.execute(
            stmt.order_by(QCRecordModel.created_at, QCRecordModel.gate_type)
        ).scalars().all()
        return [
            QCRecordView(
                record_id=r.id,
                batch_id=r.batch_id,
                gate_type=r.gate_type,
                result=r.result,
                inspected_quantity=r.inspected_quantity,
                approver_id=r.approver_id,
                finalized_at=r.finalized_at,
            )
            for r in records
        ]
