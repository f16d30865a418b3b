"""Services for the production kernel (write side)."""

from production_kernel.services.auditor_service import AuditorService, AuditTrace
from production_kernel.services.batch_lifecycle_service import (
    SYSTEM_ACTOR_ID,
    BatchLifecycleService,
)
from production_kernel.services.dispatch_service import DispatchService
from production_kernel.services.production_service import ProductionResult, ProductionService
from production_kernel.services.qc_gate_service import QCGateService
from production_kernel.services.rollup_service import RollupService, WorkOrderTotals
from production_kernel.services.sequence_service import SequenceService
from production_kernel.services.work_order_service import WorkOrderService

__all__ = [
    "AuditTrace",
    "AuditorService",
    "BatchLifecycleService",
    "DispatchService",
    "ProductionResult",
    "ProductionService",
    "QCGateService",
    "RollupService",
    "SYSTEM_ACTOR_ID",
    "SequenceService",
    "WorkOrderService",
    "WorkOrderTotals",
]
