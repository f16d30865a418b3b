"""
QCGateService -- rolls inspection results into batch gate state.

Responsibility:
    Opens QC records, records inspection results, and on finalization
    synchronizes the owning batch: gate status, approver and timestamp,
    final-gate approved/rejected quantities, and the two stored
    eligibility flags.

Architecture position:
    Kernel > Services -- imperative shell.  The eligibility derivation
    itself lives in ``domain.lifecycle.derive_eligibility``; this service
    is the only writer of the gate columns and the flags.

Invariants enforced:
    - At most one open record per (work order, batch, gate type).
    - QC within produced: a final pass/fail that would push
      approved + rejected above produced is rejected before anything is
      written.
    - Idempotence: the batch is recomputed from its finalized records, so
      re-running the sync for an already-applied record changes nothing.
    - Finalized records are frozen (db/immutability.py).

Failure modes:
    - QCRecordNotFoundError / BatchNotFoundError.
    - ValidationError: result on an already-finalized record, negative
      inspected quantity, or sync requested for a non-finalized record.
    - QuantityExceededError: final pass/fail beyond produced quantity.
    - ConsistencyViolation: recomputed counters break an invariant.

Audit relevance:
    QC_GATE_FINALIZED audit event per finalized record linked to a batch.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import LifecyclePolicy
from production_kernel.domain.lifecycle import (
    GateStatus,
    GateType,
    QCResult,
    derive_eligibility,
)
from production_kernel.exceptions import (
    ConsistencyViolation,
    QCRecordNotFoundError,
    QuantityExceededError,
    ValidationError,
)
from production_kernel.logging_config import get_logger
from production_kernel.models.production_batch import GATE_COLUMNS, ProductionBatchModel
from production_kernel.models.qc_record import QCRecordModel
from production_kernel.services.auditor_service import AuditorService
from production_kernel.services.locking import lock_batch
from production_kernel.services.sequence_service import SequenceService

logger = get_logger("services.qc_gate")


class QCGateService:
    """
    QC record handling and batch gate synchronization.

    Contract:
        ``on_qc_record_finalized`` may be invoked any number of times for
        the same record; only the first invocation changes the batch.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT recompute work order totals (RollupService).
    """

    def __init__(
        self,
        session: Session,
        policy: LifecyclePolicy | None = None,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._policy = policy or LifecyclePolicy()
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def find_open_record(
        self,
        work_order_id: UUID,
        batch_id: UUID | None,
        gate: GateType,
    ) -> QCRecordModel | None:
        stmt = select(QCRecordModel).where(
            QCRecordModel.work_order_id == work_order_id,
            QCRecordModel.gate_type == gate.value,
            QCRecordModel.finalized_at.is_(None),
        )
        if batch_id is None:
            stmt = stmt.where(QCRecordModel.batch_id.is_(None))
        else:
            stmt = stmt.where(QCRecordModel.batch_id == batch_id)
        return self._session.execute(stmt).scalar_one_or_none()

    def open_record(
        self,
        work_order_id: UUID,
        batch_id: UUID | None,
        gate: GateType,
        actor_id: UUID,
    ) -> QCRecordModel:
        """Return the open record for this gate, creating a pending one if none."""
        existing = self.find_open_record(work_order_id, batch_id, gate)
        if existing is not None:
            return existing

        record = QCRecordModel(
            work_order_id=work_order_id,
            batch_id=batch_id,
            gate_type=gate.value,
            result=QCResult.PENDING.value,
            inspected_quantity=0,
            created_by_id=actor_id,
        )
        self._session.add(record)
        self._session.flush()
        logger.info(
            "qc_record_opened",
            extra={
                "qc_record_id": str(record.id),
                "batch_id": str(batch_id) if batch_id else None,
                "gate_type": gate.value,
            },
        )
        return record

    def get_record(self, record_id: UUID) -> QCRecordModel:
        record = self._session.get(QCRecordModel, record_id)
        if record is None:
            raise QCRecordNotFoundError(record_id)
        return record

    def record_result(
        self,
        record_id: UUID,
        result: QCResult,
        inspected_quantity: int,
        approver_id: UUID,
        remarks: str | None = None,
    ) -> QCRecordModel:
        """
        Record an inspection outcome.

        ``rework`` and ``pending`` keep the record open.  ``pass``, ``fail``
        and ``waived`` finalize it and synchronize the batch.

        Raises:
            QCRecordNotFoundError: Unknown record.
            ValidationError: Record already finalized or negative quantity.
            QuantityExceededError: Final pass/fail beyond produced quantity.
        """
        result = QCResult(result)
        if inspected_quantity < 0:
            raise ValidationError(
                f"Inspected quantity must be >= 0, got {inspected_quantity}",
                field="inspected_quantity",
            )

        record = self.get_record(record_id)
        if record.is_finalized:
            raise ValidationError(
                f"QC record {record.id} is already finalized as {record.result}",
                field="record_id",
            )

        batch = None
        if record.batch_id is not None:
            batch = lock_batch(self._session, record.batch_id, nowait=self._policy.lock_nowait)

        if (
            batch is not None
            and record.gate is GateType.FINAL
            and result in (QCResult.PASS, QCResult.FAIL)
        ):
            self._check_final_quantity(batch, inspected_quantity)

        now = self._clock.now()
        record.result = result.value
        record.inspected_quantity = inspected_quantity
        record.approver_id = approver_id
        record.inspected_at = now
        record.remarks = remarks
        record.updated_by_id = approver_id

        if not result.is_terminal:
            self._session.flush()
            logger.info(
                "qc_record_updated",
                extra={
                    "qc_record_id": str(record.id),
                    "gate_type": record.gate_type,
                    "result": result.value,
                },
            )
            return record

        record.finalization_seq = self._sequences.next_value(SequenceService.QC_FINALIZATION)
        record.finalized_at = now
        self._session.flush()
        logger.info(
            "qc_record_finalized",
            extra={
                "qc_record_id": str(record.id),
                "gate_type": record.gate_type,
                "result": result.value,
                "inspected_quantity": inspected_quantity,
            },
        )

        self.on_qc_record_finalized(record, batch=batch)
        return record

    def _check_final_quantity(self, batch: ProductionBatchModel, inspected_quantity: int) -> None:
        available = batch.produced_qty - batch.qc_approved_qty - batch.qc_rejected_qty
        if inspected_quantity > available:
            logger.warning(
                "qc_quantity_exceeded",
                extra={
                    "batch_id": str(batch.id),
                    "inspected_quantity": inspected_quantity,
                    "uninspected_quantity": available,
                },
            )
            raise QuantityExceededError(
                f"QC quantities exceed produced quantity for batch #{batch.batch_number}: "
                f"approved {batch.qc_approved_qty} + rejected {batch.qc_rejected_qty} + "
                f"inspected {inspected_quantity} > produced {batch.produced_qty}",
                requested=inspected_quantity,
                available=max(0, available),
                batch_id=batch.id,
            )

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def _latest_finalized(self, batch_id: UUID, gate: GateType) -> QCRecordModel | None:
        return self._session.execute(
            select(QCRecordModel)
            .where(
                QCRecordModel.batch_id == batch_id,
                QCRecordModel.gate_type == gate.value,
                QCRecordModel.finalized_at.is_not(None),
            )
            .order_by(QCRecordModel.finalization_seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _final_sum(self, batch_id: UUID, result: QCResult) -> int:
        return int(
            self._session.execute(
                select(func.coalesce(func.sum(QCRecordModel.inspected_quantity), 0)).where(
                    QCRecordModel.batch_id == batch_id,
                    QCRecordModel.gate_type == GateType.FINAL.value,
                    QCRecordModel.result == result.value,
                    QCRecordModel.finalized_at.is_not(None),
                )
            ).scalar_one()
        )

    def on_qc_record_finalized(
        self,
        record: QCRecordModel,
        batch: ProductionBatchModel | None = None,
    ) -> bool:
        """
        Synchronize the record's batch from its finalized QC records.

        Returns:
            True if the batch changed, False for a no-op (already applied
            or record not linked to a batch).

        Raises:
            ValidationError: Record is not finalized.
            ConsistencyViolation: Recomputed counters break an invariant.
        """
        if not record.is_finalized:
            raise ValidationError(
                f"QC record {record.id} is not finalized", field="record_id"
            )
        if record.batch_id is None:
            logger.info(
                "qc_record_unlinked",
                extra={"qc_record_id": str(record.id), "gate_type": record.gate_type},
            )
            return False

        if batch is None:
            batch = lock_batch(self._session, record.batch_id, nowait=self._policy.lock_nowait)

        gate = record.gate
        status_col, approver_col, at_col = GATE_COLUMNS[gate]
        latest = self._latest_finalized(batch.id, gate)

        target: dict[str, object] = {
            status_col: latest.qc_result.to_gate_status().value,
            approver_col: latest.approver_id,
            at_col: latest.finalized_at,
        }
        if gate is GateType.FINAL:
            target["qc_approved_qty"] = self._final_sum(batch.id, QCResult.PASS)
            target["qc_rejected_qty"] = self._final_sum(batch.id, QCResult.FAIL)

        statuses = {g: batch.gate_status(g) for g in GateType}
        statuses[gate] = GateStatus(target[status_col])
        production_allowed, dispatch_allowed = derive_eligibility(
            statuses[GateType.MATERIAL],
            statuses[GateType.FIRST_PIECE],
            statuses[GateType.FINAL],
        )
        target["production_allowed"] = production_allowed
        target["dispatch_allowed"] = dispatch_allowed

        changed = {k: v for k, v in target.items() if getattr(batch, k) != v}
        if not changed:
            logger.info(
                "qc_gate_unchanged",
                extra={
                    "qc_record_id": str(record.id),
                    "identity_key": list(record.identity_key),
                },
            )
            return False

        for key, value in changed.items():
            setattr(batch, key, value)
        violations = batch.quantity_violations()
        if violations:
            logger.error(
                "qc_sync_consistency_violation",
                extra={"batch_id": str(batch.id), "violations": violations},
            )
            raise ConsistencyViolation("ProductionBatch", batch.id, violations)

        batch.updated_by_id = record.approver_id
        self._session.flush()

        self._auditor.record_qc_gate_finalized(
            batch_id=batch.id,
            record_id=record.id,
            gate_type=record.gate_type,
            result=record.result,
            inspected_quantity=record.inspected_quantity,
            actor_id=record.approver_id or record.created_by_id,
        )
        logger.info(
            "qc_gate_synced",
            extra={
                "qc_record_id": str(record.id),
                "gate_type": gate.value,
                "gate_status": target[status_col],
                "qc_approved_qty": batch.qc_approved_qty,
                "qc_rejected_qty": batch.qc_rejected_qty,
                "production_allowed": production_allowed,
                "dispatch_allowed": dispatch_allowed,
            },
        )
        return True
