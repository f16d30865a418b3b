"""Read-only selectors returning frozen DTOs."""

from production_kernel.selectors.work_order_selector import (
    DispatchView,
    QCRecordView,
    WorkOrderSelector,
)

__all__ = ["DispatchView", "QCRecordView", "WorkOrderSelector"]
