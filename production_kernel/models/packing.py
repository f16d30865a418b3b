"""
Module: production_kernel.models.packing
Responsibility: ORM persistence for cartons (packed quantity) and dispatches
    (shipped quantity) of a production batch.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Carton and dispatch quantities are > 0.
    - carton_number is unique per batch.
    - Cumulative per-batch limits (packed <= approved, dispatched <= packed)
      are enforced by DispatchService under the batch row lock.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from production_kernel.db.base import TrackedBase, UUIDString


class CartonModel(TrackedBase):
    """A packed carton holding QC-approved pieces of one batch."""

    __tablename__ = "cartons"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_carton_quantity_positive"),
        UniqueConstraint("batch_id", "carton_number", name="uq_carton_batch_number"),
    )

    work_order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    carton_number: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)
    packed_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Carton {self.carton_number} qty={self.quantity}>"


class DispatchModel(TrackedBase):
    """Quantity shipped from one batch, optionally from a specific carton."""

    __tablename__ = "dispatches"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_dispatch_quantity_positive"),
        Index("idx_dispatch_wo_time", "work_order_id", "dispatched_at"),
        Index("idx_dispatch_batch", "batch_id"),
    )

    work_order_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    carton_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cartons.id"),
        nullable=True,
    )
    quantity: Mapped[int] = mapped_column(nullable=False)
    dispatched_at: Mapped[datetime] = mapped_column(nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Dispatch qty={self.quantity} batch={self.batch_id}>"
