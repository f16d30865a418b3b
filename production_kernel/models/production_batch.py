"""
Module: production_kernel.models.production_batch
Responsibility: ORM persistence for production batches -- the independently
    gated segments of a work order's production history.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py (enums only).

Invariants enforced:
    - (work_order_id, batch_number) is unique.
    - qc_approved_qty + qc_rejected_qty <= produced_qty.
    - dispatched_qty <= qc_approved_qty.
    - Every quantity column is >= 0.
    All four are check constraints, so a buggy code path cannot commit a
    row that breaks them even if the service-level checks are bypassed.

Failure modes:
    - IntegrityError on a duplicate batch number (translated to
      ConcurrencyConflictError by BatchLifecycleService).
    - IntegrityError on a quantity check constraint.

Audit relevance:
    Gate approver/timestamp columns and the production_complete_* stamps
    record who cleared each batch and when.
"""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from production_kernel.db.base import TrackedBase, UUIDString
from production_kernel.domain.lifecycle import BatchState, GateStatus, GateType

if TYPE_CHECKING:
    from production_kernel.models.work_order import WorkOrderModel


# gate -> (status column, approver column, timestamp column)
GATE_COLUMNS: dict[GateType, tuple[str, str, str]] = {
    GateType.MATERIAL: (
        "material_qc_status",
        "material_qc_approved_by_id",
        "material_qc_approved_at",
    ),
    GateType.FIRST_PIECE: (
        "first_piece_qc_status",
        "first_piece_qc_approved_by_id",
        "first_piece_qc_approved_at",
    ),
    GateType.FINAL: (
        "final_qc_status",
        "final_qc_approved_by_id",
        "final_qc_approved_at",
    ),
}


class ProductionBatchModel(TrackedBase):
    """
    One production batch of a work order.

    Contract:
        Created only by BatchLifecycleService with every gate pending and
        every quantity zero.  Gate columns and the two eligibility flags are
        written only by QCGateService.  dispatched_qty is written only by
        DispatchService under a row lock.

    Non-goals:
        - Does not validate state transitions; see domain.lifecycle.
    """

    __tablename__ = "production_batches"

    __table_args__ = (
        UniqueConstraint("work_order_id", "batch_number", name="uq_batch_wo_number"),
        CheckConstraint(
            "qc_approved_qty + qc_rejected_qty <= produced_qty",
            name="ck_batch_qc_within_produced",
        ),
        CheckConstraint(
            "dispatched_qty <= qc_approved_qty",
            name="ck_batch_dispatch_within_approved",
        ),
        CheckConstraint(
            "batch_quantity >= 0 AND produced_qty >= 0 AND production_rejected_qty >= 0 "
            "AND qc_approved_qty >= 0 AND qc_rejected_qty >= 0 AND dispatched_qty >= 0",
            name="ck_batch_quantities_non_negative",
        ),
        CheckConstraint("batch_number >= 1", name="ck_batch_number_positive"),
        Index("idx_batch_wo_state", "work_order_id", "state"),
    )

    work_order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_number: Mapped[int] = mapped_column(nullable=False)
    trigger_reason: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchState.OPEN.value
    )
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    close_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    previous_batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("production_batches.id"),
        nullable=True,
    )

    # Quantities
    batch_quantity: Mapped[int] = mapped_column(nullable=False, default=0)
    produced_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    production_rejected_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    qc_approved_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    qc_rejected_qty: Mapped[int] = mapped_column(nullable=False, default=0)
    dispatched_qty: Mapped[int] = mapped_column(nullable=False, default=0)

    # Gates
    material_qc_status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=GateStatus.PENDING.value
    )
    material_qc_approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    material_qc_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    first_piece_qc_status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=GateStatus.PENDING.value
    )
    first_piece_qc_approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    first_piece_qc_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    final_qc_status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=GateStatus.PENDING.value
    )
    final_qc_approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    final_qc_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Derived eligibility, stored
    production_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispatch_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Production complete stamp
    production_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    production_complete_qty: Mapped[int | None] = mapped_column(nullable=True)
    production_complete_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    production_complete_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    production_complete_at: Mapped[datetime | None] = mapped_column(nullable=True)

    work_order: Mapped["WorkOrderModel"] = relationship(back_populates="batches")

    def __repr__(self) -> str:
        return f"<ProductionBatch #{self.batch_number} {self.state} wo={self.work_order_id}>"

    @property
    def batch_state(self) -> BatchState:
        return BatchState(self.state)

    @property
    def is_open(self) -> bool:
        return self.state == BatchState.OPEN.value

    def gate_status(self, gate: GateType) -> GateStatus:
        return GateStatus(getattr(self, GATE_COLUMNS[gate][0]))

    def gate_approver(self, gate: GateType) -> UUID | None:
        return getattr(self, GATE_COLUMNS[gate][1])

    def gate_approved_at(self, gate: GateType) -> datetime | None:
        return getattr(self, GATE_COLUMNS[gate][2])

    def gate_statuses(self) -> dict[str, str]:
        return {gate.value: self.gate_status(gate).value for gate in GateType}

    def quantity_violations(self) -> list[str]:
        """Human-readable list of broken quantity invariants (empty if sound)."""
        violations = []
        if self.qc_approved_qty + self.qc_rejected_qty > self.produced_qty:
            violations.append(
                f"batch #{self.batch_number}: approved {self.qc_approved_qty} + "
                f"rejected {self.qc_rejected_qty} > produced {self.produced_qty}"
            )
        if self.dispatched_qty > self.qc_approved_qty:
            violations.append(
                f"batch #{self.batch_number}: dispatched {self.dispatched_qty} > "
                f"approved {self.qc_approved_qty}"
            )
        for name in (
            "batch_quantity",
            "produced_qty",
            "production_rejected_qty",
            "qc_approved_qty",
            "qc_rejected_qty",
            "dispatched_qty",
        ):
            if getattr(self, name) < 0:
                violations.append(f"batch #{self.batch_number}: {name} is negative")
        return violations
