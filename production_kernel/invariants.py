"""
Kernel Invariants Contract.

These invariants are structural law for batch lifecycle bookkeeping. They
are hardcoded in the services, the batch check constraints and the ORM
listeners. No LifecycleConfig value may switch them off.

This module exists solely to declare these invariants explicitly. The
enforcement is distributed across BatchLifecycleService, QCGateService,
DispatchService, RollupService and db.immutability.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    QC_WITHIN_PRODUCED = "qc_within_produced"
    """approved + rejected never exceeds produced, per batch. Enforced by
    QCGateService before finalizing a record and by a batch check
    constraint."""

    DISPATCH_WITHIN_APPROVED = "dispatch_within_approved"
    """Dispatched never exceeds QC-approved, per batch. Enforced by
    DispatchService under the batch row lock and by a check constraint."""

    NON_NEGATIVE_QUANTITIES = "non_negative_quantities"
    """Every quantity counter is >= 0."""

    BATCH_NUMBER_CONTIGUITY = "batch_number_contiguity"
    """Batch numbers for a work order are 1..n with no gaps or duplicates.
    Enforced by the work order row lock and a unique constraint on
    (work_order_id, batch_number)."""

    SINGLE_OPEN_BATCH = "single_open_batch"
    """At most one open batch per work order. Enforced by closing the
    previous batch in the same transaction that creates the next."""

    NO_GATE_INHERITANCE = "no_gate_inheritance"
    """A new batch starts with every gate pending and every quantity at
    zero. It never copies QC outcomes from its predecessor."""

    ROLLUP_CONSISTENCY = "rollup_consistency"
    """Work order totals equal the sums over its batches, and each batch's
    dispatched counter equals the sum of its dispatch rows. Enforced by
    RollupService, which refuses to write otherwise."""

    QC_RECORD_FINALITY = "qc_record_finality"
    """A finalized QC record is never updated or deleted. Enforced by
    db.immutability listeners."""

    AUDIT_CHAIN = "audit_chain"
    """Audit events are append-only and hash chained. Enforced by
    AuditorService and db.immutability listeners."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "production_config",
)
