"""
Row locks for work orders and batches.

Lock order is always work order row first, then batch row.  Every mutating
path in WorkOrderService takes the work order lock before touching a batch,
so two transactions on the same work order cannot deadlock on each other
and different work orders never contend.

Lock-not-available and deadlock errors from PostgreSQL surface as
ConcurrencyConflictError.  On SQLite ``FOR UPDATE`` compiles to nothing and
the single-writer database lock serializes instead.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from production_kernel.exceptions import (
    BatchNotFoundError,
    ConcurrencyConflictError,
    WorkOrderNotFoundError,
)
from production_kernel.logging_config import get_logger
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.models.work_order import WorkOrderModel

logger = get_logger("services.locking")

# lock_not_available, deadlock_detected, serialization_failure
_CONTENTION_SQLSTATES = frozenset({"55P03", "40P01", "40001"})


def is_lock_contention(exc: OperationalError) -> bool:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    if code in _CONTENTION_SQLSTATES:
        return True
    message = str(exc.orig).lower()
    return "could not obtain lock" in message or "database is locked" in message


def _locked(session: Session, stmt, entity_type: str, entity_id: UUID, nowait: bool):
    try:
        return session.execute(
            stmt.with_for_update(nowait=nowait).execution_options(populate_existing=True)
        ).scalar_one_or_none()
    except OperationalError as exc:
        if not is_lock_contention(exc):
            raise
        logger.warning(
            "row_lock_contention",
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "nowait": nowait},
        )
        raise ConcurrencyConflictError(entity_type, entity_id, "row lock not available") from exc


def lock_work_order(session: Session, work_order_id: UUID, nowait: bool = False) -> WorkOrderModel:
    """SELECT ... FOR UPDATE the work order row.

    Raises:
        WorkOrderNotFoundError: No such work order.
        ConcurrencyConflictError: Lock not available (nowait) or deadlock.
    """
    work_order = _locked(
        session,
        select(WorkOrderModel).where(WorkOrderModel.id == work_order_id),
        "WorkOrder",
        work_order_id,
        nowait,
    )
    if work_order is None:
        raise WorkOrderNotFoundError(work_order_id)
    return work_order


def lock_batch(session: Session, batch_id: UUID, nowait: bool = False) -> ProductionBatchModel:
    """SELECT ... FOR UPDATE the batch row.

    Raises:
        BatchNotFoundError: No such batch.
        ConcurrencyConflictError: Lock not available (nowait) or deadlock.
    """
    batch = _locked(
        session,
        select(ProductionBatchModel).where(ProductionBatchModel.id == batch_id),
        "ProductionBatch",
        batch_id,
        nowait,
    )
    if batch is None:
        raise BatchNotFoundError(batch_id)
    return batch
