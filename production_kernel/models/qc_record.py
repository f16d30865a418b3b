"""
Module: production_kernel.models.qc_record
Responsibility: ORM persistence for quality inspection records.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py (enums only).

Invariants enforced:
    - At most one open (finalized_at IS NULL) record per
      (work_order_id, batch_id, gate_type): partial unique index.
    - Finalized records are immutable (db/immutability.py).
    - inspected_quantity >= 0.

Failure modes:
    - IntegrityError when a second open record races in.
    - ImmutabilityViolationError on UPDATE/DELETE of a finalized record.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from production_kernel.db.base import TrackedBase, UUIDString
from production_kernel.domain.lifecycle import GateType, QCResult


class QCRecordModel(TrackedBase):
    """
    One inspection at one gate.

    Contract:
        Opens as ``pending``.  ``rework``/``pending`` results keep it open;
        ``pass``/``fail``/``waived`` stamp finalized_at and a finalization
        sequence, after which the row is frozen.
    """

    __tablename__ = "qc_records"

    __table_args__ = (
        CheckConstraint("inspected_quantity >= 0", name="ck_qc_inspected_non_negative"),
        Index(
            "uq_qc_open_record",
            "work_order_id",
            "batch_id",
            "gate_type",
            unique=True,
            postgresql_where=text("finalized_at IS NULL"),
            sqlite_where=text("finalized_at IS NULL"),
        ),
        Index("idx_qc_batch_gate", "batch_id", "gate_type"),
    )

    work_order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=True,
    )
    gate_type: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(
        String(10), nullable=False, default=QCResult.PENDING.value
    )
    inspected_quantity: Mapped[int] = mapped_column(nullable=False, default=0)
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    remarks: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    inspected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Ordering among finalized records of the same gate, from SequenceService
    finalization_seq: Mapped[int | None] = mapped_column(nullable=True, unique=True)

    def __repr__(self) -> str:
        return f"<QCRecord {self.gate_type}:{self.result} batch={self.batch_id}>"

    @property
    def gate(self) -> GateType:
        return GateType(self.gate_type)

    @property
    def qc_result(self) -> QCResult:
        return QCResult(self.result)

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @property
    def identity_key(self) -> tuple[str, str, int]:
        """(gate type, result, inspected quantity) -- what QC sync is keyed on."""
        return (self.gate_type, self.result, self.inspected_quantity)
