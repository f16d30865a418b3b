"""
Module: production_kernel.models.work_order
Responsibility: ORM persistence for work orders -- the committed manufacturing
    obligation whose quantity the batches fulfil.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - wo_number is unique.
    - Aggregate columns (produced_qty ... composite_status) are written only
      by RollupService; is_complete/completed_* only by mark_complete.
    - requested_quantity > 0 and every aggregate >= 0 (check constraints).

Failure modes:
    - IntegrityError on duplicate wo_number or a negative aggregate.
"""

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, Date, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from production_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from production_kernel.models.production_batch import ProductionBatchModel


class WorkOrderModel(TrackedBase):
    """
    Work order row with live aggregates over its batches.

    Contract:
        Intake fields (wo_number, item_code, requested_quantity, due_date)
        come from order intake.  Everything else is derived.
    """

    __tablename__ = "work_orders"

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="ck_wo_requested_positive"),
        CheckConstraint(
            "produced_qty >= 0 AND qc_approved_qty >= 0 AND qc_rejected_qty >= 0 "
            "AND packed_qty >= 0 AND dispatched_qty >= 0 AND remaining_qty >= 0",
            name="ck_wo_aggregates_non_negative",
        ),
    )

    wo_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    item_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requested_quantity: Mapped[int] = mapped_column(nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Rollup-owned aggregates
    produced_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    qc_approved_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    qc_rejected_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    packed_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    dispatched_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    remaining_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    composite_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending"
    )

    # Completion (one-way)
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    batches: Mapped[list["ProductionBatchModel"]] = relationship(
        back_populates="work_order",
        cascade="all, delete-orphan",
        order_by="ProductionBatchModel.batch_number",
    )

    def __repr__(self) -> str:
        return f"<WorkOrder {self.wo_number} qty={self.requested_quantity}>"
