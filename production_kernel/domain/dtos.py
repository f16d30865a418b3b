"""
DTOs -- Immutable values returned across the kernel boundary.

Responsibility:
    Frozen data structures handed to callers: dispatch decisions,
    completion checks, packable quantities and the read-only status views
    used by reporting.  Callers never receive live ORM rows from the
    reporting selectors.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model`` converters are only
    invoked from the service and selector layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from production_kernel.domain.lifecycle import (
    BatchState,
    CompositeStatus,
    GateStatus,
    GateType,
    TriggerReason,
)
from production_kernel.exceptions import ProductionKernelError

if TYPE_CHECKING:
    from production_kernel.models.production_batch import ProductionBatchModel
    from production_kernel.models.work_order import WorkOrderModel


@dataclass(frozen=True)
class DispatchDecision:
    """
    Accept or reject verdict for a dispatch request.

    A rejection carries the typed error that ``create_dispatch`` would
    raise, so a read-only caller can report the same code and reason.
    """

    accepted: bool
    batch_id: UUID
    quantity: int
    available_quantity: int = 0
    reason: str = ""
    error: ProductionKernelError | None = field(default=None, compare=False)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @classmethod
    def accept(cls, batch_id: UUID, quantity: int, available_quantity: int) -> DispatchDecision:
        return cls(
            accepted=True,
            batch_id=batch_id,
            quantity=quantity,
            available_quantity=available_quantity,
        )

    @classmethod
    def reject(
        cls,
        batch_id: UUID,
        quantity: int,
        error: ProductionKernelError,
        available_quantity: int = 0,
    ) -> DispatchDecision:
        return cls(
            accepted=False,
            batch_id=batch_id,
            quantity=quantity,
            available_quantity=available_quantity,
            reason=str(error),
            error=error,
        )

    def raise_if_rejected(self) -> None:
        if not self.accepted and self.error is not None:
            raise self.error


@dataclass(frozen=True)
class PackableQuantity:
    batch_id: UUID
    qc_approved_qty: int
    packed_qty: int

    @property
    def available(self) -> int:
        return max(0, self.qc_approved_qty - self.packed_qty)


@dataclass(frozen=True)
class CompletionCheck:
    work_order_id: UUID
    can_complete: bool
    blockers: tuple[str, ...] = ()


@dataclass(frozen=True)
class GateView:
    gate_type: GateType
    status: GateStatus
    approver_id: UUID | None
    approved_at: datetime | None


@dataclass(frozen=True)
class BatchStatusView:
    """Read-only snapshot of one production batch."""

    batch_id: UUID
    work_order_id: UUID
    batch_number: int
    state: BatchState
    trigger_reason: TriggerReason
    started_at: datetime
    ended_at: datetime | None
    batch_quantity: int
    produced_qty: int
    production_rejected_qty: int
    qc_approved_qty: int
    qc_rejected_qty: int
    packed_qty: int
    dispatched_qty: int
    production_allowed: bool
    dispatch_allowed: bool
    production_complete: bool
    previous_batch_id: UUID | None
    gates: tuple[GateView, ...]

    @property
    def qc_pending_qty(self) -> int:
        return max(0, self.produced_qty - self.qc_approved_qty - self.qc_rejected_qty)

    @property
    def available_to_dispatch(self) -> int:
        return max(0, self.packed_qty - self.dispatched_qty)

    def gate(self, gate_type: GateType) -> GateView:
        for view in self.gates:
            if view.gate_type is gate_type:
                return view
        raise KeyError(gate_type)

    @classmethod
    def from_model(cls, batch: ProductionBatchModel, packed_qty: int) -> BatchStatusView:
        return cls(
            batch_id=batch.id,
            work_order_id=batch.work_order_id,
            batch_number=batch.batch_number,
            state=BatchState(batch.state),
            trigger_reason=TriggerReason(batch.trigger_reason),
            started_at=batch.started_at,
            ended_at=batch.ended_at,
            batch_quantity=batch.batch_quantity,
            produced_qty=batch.produced_qty,
            production_rejected_qty=batch.production_rejected_qty,
            qc_approved_qty=batch.qc_approved_qty,
            qc_rejected_qty=batch.qc_rejected_qty,
            packed_qty=packed_qty,
            dispatched_qty=batch.dispatched_qty,
            production_allowed=batch.production_allowed,
            dispatch_allowed=batch.dispatch_allowed,
            production_complete=batch.production_complete,
            previous_batch_id=batch.previous_batch_id,
            gates=tuple(
                GateView(
                    gate_type=gate,
                    status=batch.gate_status(gate),
                    approver_id=batch.gate_approver(gate),
                    approved_at=batch.gate_approved_at(gate),
                )
                for gate in GateType
            ),
        )


@dataclass(frozen=True)
class WorkOrderStatusView:
    """Read-only work order totals and composite status."""

    work_order_id: UUID
    wo_number: str
    requested_quantity: int
    due_date: date | None
    produced_qty: int
    qc_approved_qty: int
    qc_rejected_qty: int
    packed_qty: int
    dispatched_qty: int
    remaining_qty: int
    composite_status: CompositeStatus
    open_batch_count: int
    batch_count: int
    is_complete: bool
    completed_at: datetime | None

    @property
    def qc_pending_qty(self) -> int:
        return max(0, self.produced_qty - self.qc_approved_qty - self.qc_rejected_qty)

    @property
    def has_pending_qc(self) -> bool:
        return self.produced_qty > self.qc_approved_qty + self.qc_rejected_qty

    @classmethod
    def from_model(
        cls,
        work_order: WorkOrderModel,
        open_batch_count: int,
        batch_count: int,
    ) -> WorkOrderStatusView:
        return cls(
            work_order_id=work_order.id,
            wo_number=work_order.wo_number,
            requested_quantity=work_order.requested_quantity,
            due_date=work_order.due_date,
            produced_qty=work_order.produced_qty,
            qc_approved_qty=work_order.qc_approved_qty,
            qc_rejected_qty=work_order.qc_rejected_qty,
            packed_qty=work_order.packed_qty,
            dispatched_qty=work_order.dispatched_qty,
            remaining_qty=work_order.remaining_qty,
            composite_status=CompositeStatus(work_order.composite_status),
            open_batch_count=open_batch_count,
            batch_count=batch_count,
            is_complete=work_order.is_complete,
            completed_at=work_order.completed_at,
        )


@dataclass(frozen=True)
class LifecyclePolicy:
    """
    Kernel-side view of the lifecycle configuration.

    Built by ``production_config.bridges`` from a loaded LifecycleConfig so
    the kernel never imports the config package.
    """

    gap_threshold_days: int = 7
    lock_nowait: bool = False
    require_production_clearance: bool = False
    auto_open_qc_records: bool = True

    def __post_init__(self) -> None:
        if self.gap_threshold_days <= 0:
            raise ValueError("gap_threshold_days must be positive")
