"""
ProductionService -- attributes production events to the current batch.

Responsibility:
    Accepts a production event (good and rejected pieces), resolves the
    current batch through BatchLifecycleService, stores the log row and
    recomputes the batch's produced quantities from its log rows.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Log quantities are >= 0 and at least one is > 0.
    - Batch produced_qty / production_rejected_qty equal the sums of the
      batch's production logs (recomputed, never incremented).
    - With ``require_production_clearance`` the material and first-piece
      gates must be cleared before production is accepted.

Failure modes:
    - ValidationError on malformed quantities.
    - GateNotSatisfiedError when clearance is required and missing.
    - ConcurrencyConflictError from the batch lifecycle locks.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import LifecyclePolicy
from production_kernel.domain.lifecycle import BatchState, GateType
from production_kernel.exceptions import GateNotSatisfiedError, ValidationError
from production_kernel.logging_config import get_logger
from production_kernel.models.production_log import ProductionLogModel
from production_kernel.services.batch_lifecycle_service import BatchLifecycleService
from production_kernel.services.locking import lock_batch
from production_kernel.services.qc_gate_service import QCGateService

logger = get_logger("services.production")


@dataclass(frozen=True)
class ProductionResult:
    log_id: UUID
    batch_id: UUID
    batch_number: int
    produced_qty: int
    production_rejected_qty: int


class ProductionService:
    """
    Production logging against the current batch.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT recompute work order totals (RollupService).
    """

    def __init__(
        self,
        session: Session,
        lifecycle: BatchLifecycleService,
        qc_gates: QCGateService,
        policy: LifecyclePolicy | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._lifecycle = lifecycle
        self._qc_gates = qc_gates
        self._policy = policy or LifecyclePolicy()
        self._clock = clock or SystemClock()

    @staticmethod
    def validate_quantities(ok_quantity: int, rejected_quantity: int) -> None:
        if ok_quantity < 0 or rejected_quantity < 0:
            raise ValidationError(
                f"Production quantities must be >= 0 (ok={ok_quantity}, "
                f"rejected={rejected_quantity})",
                field="ok_quantity" if ok_quantity < 0 else "rejected_quantity",
            )
        if ok_quantity == 0 and rejected_quantity == 0:
            raise ValidationError(
                "Production event must report at least one piece", field="ok_quantity"
            )

    def record_production(
        self,
        work_order_id: UUID,
        ok_quantity: int,
        rejected_quantity: int,
        actor_id: UUID,
        logged_at: datetime | None = None,
    ) -> ProductionResult:
        """
        Attribute a production event to the work order's current batch.

        Raises:
            ValidationError: Negative quantities, or both zero.
            GateNotSatisfiedError: Clearance required and not granted.
        """
        self.validate_quantities(ok_quantity, rejected_quantity)

        batch_id = self._lifecycle.get_or_create_current_batch(work_order_id, actor_id)
        batch = lock_batch(self._session, batch_id, nowait=self._policy.lock_nowait)

        if self._policy.require_production_clearance and not batch.production_allowed:
            logger.warning(
                "production_rejected_not_cleared",
                extra={"batch_id": str(batch.id), "gates": batch.gate_statuses()},
            )
            raise GateNotSatisfiedError(
                batch_id=batch.id,
                batch_number=batch.batch_number,
                gate_statuses={
                    gate.value: batch.gate_status(gate).value
                    for gate in (GateType.MATERIAL, GateType.FIRST_PIECE)
                },
                approved_quantity=batch.qc_approved_qty,
                batch_quantity=batch.batch_quantity,
                action="log production",
            )

        if batch.state == BatchState.CLOSED_COMPLETE.value:
            # Quantity already met: the closed batch keeps absorbing output
            logger.warning(
                "production_on_completed_batch",
                extra={"batch_id": str(batch.id), "batch_number": batch.batch_number},
            )

        is_first_log = batch.produced_qty == 0 and batch.production_rejected_qty == 0
        log = ProductionLogModel(
            work_order_id=work_order_id,
            batch_id=batch.id,
            ok_quantity=ok_quantity,
            rejected_quantity=rejected_quantity,
            logged_at=logged_at or self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(log)
        self._session.flush()

        produced, rejected = self._session.execute(
            select(
                func.coalesce(func.sum(ProductionLogModel.ok_quantity), 0),
                func.coalesce(func.sum(ProductionLogModel.rejected_quantity), 0),
            ).where(ProductionLogModel.batch_id == batch.id)
        ).one()
        batch.produced_qty = int(produced)
        batch.production_rejected_qty = int(rejected)
        batch.updated_by_id = actor_id
        self._session.flush()

        if is_first_log and self._policy.auto_open_qc_records:
            self._qc_gates.open_record(work_order_id, batch.id, GateType.FINAL, actor_id)

        logger.info(
            "production_logged",
            extra={
                "batch_id": str(batch.id),
                "batch_number": batch.batch_number,
                "ok_quantity": ok_quantity,
                "rejected_quantity": rejected_quantity,
                "produced_qty": batch.produced_qty,
            },
        )
        return ProductionResult(
            log_id=log.id,
            batch_id=batch.id,
            batch_number=batch.batch_number,
            produced_qty=batch.produced_qty,
            production_rejected_qty=batch.production_rejected_qty,
        )
