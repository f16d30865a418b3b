"""
Module: production_kernel.models.production_log
Responsibility: ORM persistence for production events attributed to a batch.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ok_quantity >= 0, rejected_quantity >= 0, and at least one is > 0.
    - Append-only in practice; batch produced_qty is recomputed from these rows.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from production_kernel.db.base import TrackedBase, UUIDString


class ProductionLogModel(TrackedBase):
    """One production event: good and rejected pieces logged at a point in time."""

    __tablename__ = "production_logs"

    __table_args__ = (
        CheckConstraint(
            "ok_quantity >= 0 AND rejected_quantity >= 0 "
            "AND ok_quantity + rejected_quantity > 0",
            name="ck_production_log_quantities",
        ),
        Index("idx_production_log_batch", "batch_id", "logged_at"),
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
    ok_quantity: Mapped[int] = mapped_column(nullable=False)
    rejected_quantity: Mapped[int] = mapped_column(nullable=False, default=0)
    logged_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ProductionLog ok={self.ok_quantity} rej={self.rejected_quantity}>"
