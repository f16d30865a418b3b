"""
Config -> Kernel Bridges.

Converts a loaded LifecycleConfig into the kernel's LifecyclePolicy.  This
lives in production_config (the producer) because the kernel must NEVER
import production_config.

Usage:
    from production_config.bridges import to_lifecycle_policy

    config = get_active_config()
    service = WorkOrderService(session, policy=to_lifecycle_policy(config))
"""

from __future__ import annotations

from production_config.schema import LifecycleConfig
from production_kernel.domain.dtos import LifecyclePolicy


def to_lifecycle_policy(config: LifecycleConfig) -> LifecyclePolicy:
    return LifecyclePolicy(
        gap_threshold_days=config.gap_threshold_days,
        lock_nowait=config.lock_nowait,
        require_production_clearance=config.require_production_clearance,
        auto_open_qc_records=config.auto_open_qc_records,
    )
