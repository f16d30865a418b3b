"""ORM models for the production kernel."""

from production_kernel.models.audit_event import AuditAction, AuditEvent
from production_kernel.models.packing import CartonModel, DispatchModel
from production_kernel.models.production_batch import GATE_COLUMNS, ProductionBatchModel
from production_kernel.models.production_log import ProductionLogModel
from production_kernel.models.qc_record import QCRecordModel
from production_kernel.models.sequence import SequenceCounter
from production_kernel.models.work_order import WorkOrderModel

__all__ = [
    "AuditAction",
    "AuditEvent",
    "CartonModel",
    "DispatchModel",
    "GATE_COLUMNS",
    "ProductionBatchModel",
    "ProductionLogModel",
    "QCRecordModel",
    "SequenceCounter",
    "WorkOrderModel",
    "import_all_models",
]


def import_all_models() -> None:
    """Make sure every table is registered on Base.metadata.

    Importing this package already does that; the function exists so
    create_tables() has an explicit call site.
    """
