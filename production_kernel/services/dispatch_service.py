"""
DispatchService -- packing and dispatch validation for a single batch.

Responsibility:
    Packs QC-approved pieces into cartons, validates dispatch requests,
    creates dispatches under the batch row lock and cancels them.

Architecture position:
    Kernel > Services -- imperative shell.  Validation is per batch, so a
    cleared batch can ship while another batch of the same work order is
    still in production.

Invariants enforced:
    - Packed <= QC-approved, per batch.
    - Dispatched <= packed and dispatched <= QC-approved, per batch.  The
      second bound is re-checked under the row lock right before the
      counter moves.
    - Only batches whose stored ``dispatch_allowed`` flag is set may ship.

Failure modes (validate_dispatch, first failure wins):
    1. BatchWorkOrderMismatchError -- batch belongs to another work order.
    2. GateNotSatisfiedError -- dispatch_allowed is false.
    3. QuantityExceededError -- nothing packed beyond what already shipped.
    4. QuantityExceededError -- quantity above packed - dispatched.
    5. ValidationError -- quantity <= 0.

Audit relevance:
    DISPATCH_CREATED and DISPATCH_CANCELLED audit events.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.domain.dtos import DispatchDecision, LifecyclePolicy, PackableQuantity
from production_kernel.exceptions import (
    BatchNotFoundError,
    BatchWorkOrderMismatchError,
    ConsistencyViolation,
    DispatchNotFoundError,
    GateNotSatisfiedError,
    QuantityExceededError,
    ValidationError,
)
from production_kernel.logging_config import get_logger
from production_kernel.models.packing import CartonModel, DispatchModel
from production_kernel.models.production_batch import ProductionBatchModel
from production_kernel.services.auditor_service import AuditorService
from production_kernel.services.locking import lock_batch

logger = get_logger("services.dispatch")


class DispatchService:
    """
    Packing and dispatch for production batches.

    Contract:
        ``validate_dispatch`` is read-only.  ``create_dispatch`` runs the
        same checks under a row lock and then moves the counter.

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

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    def packed_quantity(self, batch_id: UUID) -> int:
        return int(
            self._session.execute(
                select(func.coalesce(func.sum(CartonModel.quantity), 0)).where(
                    CartonModel.batch_id == batch_id
                )
            ).scalar_one()
        )

    def _carton_count(self, batch_id: UUID) -> int:
        return int(
            self._session.execute(
                select(func.count(CartonModel.id)).where(CartonModel.batch_id == batch_id)
            ).scalar_one()
        )

    def get_packable_quantity(self, batch_id: UUID) -> PackableQuantity:
        batch = self._session.get(ProductionBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return PackableQuantity(
            batch_id=batch.id,
            qc_approved_qty=batch.qc_approved_qty,
            packed_qty=self.packed_quantity(batch.id),
        )

    def pack_carton(
        self,
        batch_id: UUID,
        quantity: int,
        actor_id: UUID,
        carton_number: str | None = None,
    ) -> CartonModel:
        """
        Pack approved pieces of a batch into a carton.

        Raises:
            ValidationError: quantity <= 0.
            QuantityExceededError: quantity above approved - already packed.
        """
        if quantity <= 0:
            raise ValidationError(
                f"Carton quantity must be positive, got {quantity}", field="quantity"
            )

        batch = lock_batch(self._session, batch_id, nowait=self._policy.lock_nowait)
        packable = PackableQuantity(
            batch_id=batch.id,
            qc_approved_qty=batch.qc_approved_qty,
            packed_qty=self.packed_quantity(batch.id),
        )
        if quantity > packable.available:
            logger.warning(
                "packing_rejected",
                extra={
                    "batch_id": str(batch.id),
                    "quantity": quantity,
                    "packable": packable.available,
                },
            )
            raise QuantityExceededError(
                f"Cannot pack {quantity} from batch #{batch.batch_number}: "
                f"only {packable.available} approved and unpacked "
                f"(approved {packable.qc_approved_qty}, packed {packable.packed_qty})",
                requested=quantity,
                available=packable.available,
                batch_id=batch.id,
            )

        if carton_number is None:
            carton_number = f"B{batch.batch_number}-C{self._carton_count(batch.id) + 1:03d}"

        carton = CartonModel(
            work_order_id=batch.work_order_id,
            batch_id=batch.id,
            carton_number=carton_number,
            quantity=quantity,
            packed_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(carton)
        self._session.flush()
        logger.info(
            "carton_packed",
            extra={
                "batch_id": str(batch.id),
                "carton_number": carton_number,
                "quantity": quantity,
                "packed_qty": packable.packed_qty + quantity,
            },
        )
        return carton

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        batch: ProductionBatchModel,
        work_order_id: UUID,
        quantity: int,
    ) -> DispatchDecision:
        if batch.work_order_id != work_order_id:
            return DispatchDecision.reject(
                batch.id, quantity, BatchWorkOrderMismatchError(batch.id, work_order_id)
            )

        if not batch.dispatch_allowed:
            return DispatchDecision.reject(
                batch.id,
                quantity,
                GateNotSatisfiedError(
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    gate_statuses=batch.gate_statuses(),
                    approved_quantity=batch.qc_approved_qty,
                    batch_quantity=batch.batch_quantity,
                ),
            )

        packed = self.packed_quantity(batch.id)
        available = packed - batch.dispatched_qty
        if packed <= batch.dispatched_qty:
            detail = (
                "no cartons packed yet"
                if packed == 0
                else f"packed {packed}, already dispatched {batch.dispatched_qty}"
            )
            message = f"no packed quantity available for batch #{batch.batch_number}: {detail}"
            return DispatchDecision.reject(
                batch.id,
                quantity,
                QuantityExceededError(message, requested=quantity, available=0, batch_id=batch.id),
            )

        if quantity > available:
            return DispatchDecision.reject(
                batch.id,
                quantity,
                QuantityExceededError(
                    f"Cannot dispatch {quantity} from batch #{batch.batch_number}: "
                    f"only {available} available (packed {packed}, "
                    f"already dispatched {batch.dispatched_qty})",
                    requested=quantity,
                    available=available,
                    batch_id=batch.id,
                ),
                available_quantity=available,
            )

        if quantity <= 0:
            return DispatchDecision.reject(
                batch.id,
                quantity,
                ValidationError(
                    f"Dispatch quantity must be positive, got {quantity}", field="quantity"
                ),
                available_quantity=available,
            )

        return DispatchDecision.accept(batch.id, quantity, available)

    def validate_dispatch(
        self,
        batch_id: UUID,
        work_order_id: UUID,
        quantity: int,
    ) -> DispatchDecision:
        """
        Read-only verdict on a dispatch request.

        Raises:
            BatchNotFoundError: Unknown batch (not a rejection: nothing to judge).
        """
        batch = self._session.get(ProductionBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        decision = self._evaluate(batch, work_order_id, quantity)
        if not decision.accepted:
            logger.info(
                "dispatch_rejected",
                extra={
                    "batch_id": str(batch_id),
                    "quantity": quantity,
                    "error_code": decision.error_code,
                    "reason": decision.reason,
                },
            )
        return decision

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create_dispatch(
        self,
        batch_id: UUID,
        work_order_id: UUID,
        quantity: int,
        actor_id: UUID,
        carton_id: UUID | None = None,
        reference: str | None = None,
    ) -> DispatchModel:
        """
        Validate under the batch row lock and record a dispatch.

        Raises:
            The rejecting error of ``validate_dispatch``, or
            QuantityExceededError if approved - dispatched is short, or
            ValidationError if the carton belongs to another batch.
        """
        batch = lock_batch(self._session, batch_id, nowait=self._policy.lock_nowait)
        decision = self._evaluate(batch, work_order_id, quantity)
        if not decision.accepted:
            logger.warning(
                "dispatch_rejected",
                extra={
                    "batch_id": str(batch_id),
                    "quantity": quantity,
                    "error_code": decision.error_code,
                    "reason": decision.reason,
                },
            )
            decision.raise_if_rejected()

        unshipped_approved = batch.qc_approved_qty - batch.dispatched_qty
        if quantity > unshipped_approved:
            raise QuantityExceededError(
                f"Cannot dispatch {quantity} from batch #{batch.batch_number}: "
                f"only {unshipped_approved} QC-approved and not yet dispatched",
                requested=quantity,
                available=unshipped_approved,
                batch_id=batch.id,
            )

        if carton_id is not None:
            carton = self._session.get(CartonModel, carton_id)
            if carton is None or carton.batch_id != batch.id:
                raise ValidationError(
                    f"Carton {carton_id} does not belong to batch {batch.id}",
                    field="carton_id",
                )

        dispatch = DispatchModel(
            work_order_id=work_order_id,
            batch_id=batch.id,
            carton_id=carton_id,
            quantity=quantity,
            dispatched_at=self._clock.now(),
            reference=reference,
            created_by_id=actor_id,
        )
        self._session.add(dispatch)
        batch.dispatched_qty += quantity
        batch.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_dispatch_created(
            dispatch_id=dispatch.id,
            batch_id=batch.id,
            work_order_id=work_order_id,
            quantity=quantity,
            actor_id=actor_id,
        )
        logger.info(
            "dispatch_created",
            extra={
                "dispatch_id": str(dispatch.id),
                "batch_id": str(batch.id),
                "quantity": quantity,
                "batch_dispatched_qty": batch.dispatched_qty,
            },
        )
        return dispatch

    def cancel_dispatch(self, dispatch_id: UUID, actor_id: UUID) -> DispatchModel:
        """
        Delete a dispatch and reverse its quantity on the batch.

        Raises:
            DispatchNotFoundError: Unknown dispatch.
            ConsistencyViolation: The batch counter is already below the
                dispatch being reversed.
        """
        dispatch = self._session.get(DispatchModel, dispatch_id)
        if dispatch is None:
            raise DispatchNotFoundError(dispatch_id)

        batch = lock_batch(self._session, dispatch.batch_id, nowait=self._policy.lock_nowait)
        if dispatch.quantity > batch.dispatched_qty:
            violation = (
                f"batch #{batch.batch_number}: dispatched_qty {batch.dispatched_qty} "
                f"< cancelled dispatch {dispatch.quantity}"
            )
            logger.error(
                "dispatch_counter_drift",
                extra={
                    "dispatch_id": str(dispatch.id),
                    "batch_id": str(batch.id),
                    "violations": [violation],
                },
            )
            raise ConsistencyViolation("ProductionBatch", batch.id, [violation])
        batch.dispatched_qty -= dispatch.quantity
        batch.updated_by_id = actor_id
        self._session.delete(dispatch)
        self._session.flush()

        self._auditor.record_dispatch_cancelled(
            dispatch_id=dispatch.id,
            batch_id=batch.id,
            quantity=dispatch.quantity,
            actor_id=actor_id,
        )
        logger.info(
            "dispatch_cancelled",
            extra={
                "dispatch_id": str(dispatch.id),
                "batch_id": str(batch.id),
                "quantity": dispatch.quantity,
            },
        )
        return dispatch
