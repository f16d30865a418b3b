"""
Lifecycle -- Pure batch lifecycle rules.

Responsibility:
    Declares the batch state machine, QC vocabularies and the pure decision
    functions the services apply: which trigger reason (if any) spawns the
    next batch, how gate statuses map to eligibility flags, how a work
    order's composite status is derived, and which completion blockers
    apply.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Services gather counters from the database, call into this module and
    persist the outcome.  Nothing here touches a Session.

Invariants enforced:
    - Closed batch states are terminal (``can_transition``).
    - Eligibility flags are derived in exactly one place
      (``derive_eligibility``).

Failure modes:
    - None.  Functions are total over their inputs.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class BatchState(str, Enum):
    OPEN = "open"
    CLOSED_SUPERSEDED = "closed_superseded"
    CLOSED_COMPLETE = "closed_complete"

    @property
    def is_closed(self) -> bool:
        return self is not BatchState.OPEN


class TriggerReason(str, Enum):
    """Why a batch was started."""

    INITIAL = "initial"
    POST_DISPATCH = "post_dispatch"
    GAP_RESTART = "gap_restart"
    POST_COMPLETE = "post_complete"
    RESUMED = "resumed"


class GateType(str, Enum):
    MATERIAL = "material"
    FIRST_PIECE = "first_piece"
    FINAL = "final"


class GateStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    WAIVED = "waived"

    @property
    def is_cleared(self) -> bool:
        return self in CLEARED_GATE_STATUSES


CLEARED_GATE_STATUSES: frozenset[GateStatus] = frozenset(
    {GateStatus.PASSED, GateStatus.WAIVED}
)


class QCResult(str, Enum):
    """Outcome recorded on a QC record."""

    PASS = "pass"
    FAIL = "fail"
    REWORK = "rework"
    WAIVED = "waived"
    PENDING = "pending"

    @property
    def is_terminal(self) -> bool:
        """Terminal results finalize the record; the rest keep it open."""
        return self in _RESULT_TO_GATE_STATUS

    def to_gate_status(self) -> GateStatus:
        try:
            return _RESULT_TO_GATE_STATUS[self]
        except KeyError:
            raise ValueError(f"QC result {self.value} does not finalize a gate") from None


_RESULT_TO_GATE_STATUS: dict[QCResult, GateStatus] = {
    QCResult.PASS: GateStatus.PASSED,
    QCResult.FAIL: GateStatus.FAILED,
    QCResult.WAIVED: GateStatus.WAIVED,
}


class CompositeStatus(str, Enum):
    """Work order status, listed in first-match precedence order."""

    FULLY_DISPATCHED = "fully_dispatched"
    AWAITING_NEXT_BATCH = "awaiting_next_batch"
    PARTIALLY_DISPATCHED = "partially_dispatched"
    READY_TO_DISPATCH = "ready_to_dispatch"
    PARTIALLY_QC_APPROVED = "partially_qc_approved"
    IN_PRODUCTION = "in_production"
    PENDING = "pending"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

_ALLOWED_TRANSITIONS: dict[BatchState, frozenset[BatchState]] = {
    BatchState.OPEN: frozenset(
        {BatchState.CLOSED_SUPERSEDED, BatchState.CLOSED_COMPLETE}
    ),
    BatchState.CLOSED_SUPERSEDED: frozenset(),
    BatchState.CLOSED_COMPLETE: frozenset(),
}


def can_transition(current: BatchState, target: BatchState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def derive_eligibility(
    material: GateStatus,
    first_piece: GateStatus,
    final: GateStatus,
) -> tuple[bool, bool]:
    """Return ``(production_allowed, dispatch_allowed)`` for three gate statuses."""
    production_allowed = material.is_cleared and first_piece.is_cleared
    dispatch_allowed = production_allowed and final.is_cleared
    return production_allowed, dispatch_allowed


# ---------------------------------------------------------------------------
# Trigger selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LatestBatchFacts:
    """What the trigger rules need to know about the latest batch."""

    state: BatchState
    last_log_at: datetime | None
    # Latest dispatch charged to this batch. Dispatches of earlier batches
    # never supersede it.
    last_dispatch_at: datetime | None
    total_produced: int
    requested_quantity: int


@dataclass(frozen=True)
class TriggerDecision:
    """Outcome of evaluating the trigger rules against the latest batch."""

    reason: TriggerReason | None
    detail: str = ""

    @property
    def spawns_batch(self) -> bool:
        return self.reason is not None


def select_trigger_reason(
    facts: LatestBatchFacts,
    now: datetime,
    gap_threshold: timedelta,
) -> TriggerDecision:
    """
    Decide whether the latest batch must be superseded, and why.

    Rules, first match wins:
        1. Latest batch closed_complete: post_complete while total produced
           is short of the requested quantity, otherwise keep it.
        2. post_dispatch: stock of the latest batch itself was dispatched.
           Shipping an older batch's stock leaves a batch in production
           alone.
        3. gap_restart: production was logged and the last log is older
           than ``gap_threshold``.
        4. resumed: the latest batch was closed manually.

    A batch spawned by any rule starts after the event that triggered it, so
    evaluating again with no new event returns no reason.
    """
    if facts.state is BatchState.CLOSED_COMPLETE:
        if facts.total_produced < facts.requested_quantity:
            return TriggerDecision(
                TriggerReason.POST_COMPLETE,
                f"produced {facts.total_produced} < requested {facts.requested_quantity}",
            )
        return TriggerDecision(None, "production complete and quantity met")

    if facts.last_dispatch_at is not None:
        return TriggerDecision(
            TriggerReason.POST_DISPATCH,
            f"dispatch at {facts.last_dispatch_at.isoformat()}",
        )

    if facts.last_log_at is not None and now - facts.last_log_at > gap_threshold:
        return TriggerDecision(
            TriggerReason.GAP_RESTART,
            f"idle since {facts.last_log_at.isoformat()}",
        )

    if facts.state is BatchState.CLOSED_SUPERSEDED:
        return TriggerDecision(TriggerReason.RESUMED, "latest batch closed manually")

    return TriggerDecision(None)


def remaining_to_produce(requested_quantity: int, total_produced: int) -> int:
    return max(0, requested_quantity - total_produced)


# ---------------------------------------------------------------------------
# Work order rollup
# ---------------------------------------------------------------------------


def derive_composite_status(
    *,
    ordered: int,
    produced: int,
    approved: int,
    rejected: int,
    dispatched: int,
    has_open_batch: bool,
) -> CompositeStatus:
    """
    First-match composite status for a work order's live totals.

    The precedence is applied literally, so ``partially_qc_approved`` only
    wins when nothing approved is waiting to ship.
    """
    qc_pending = produced > approved + rejected
    if dispatched >= ordered and (ordered > 0 or dispatched > 0):
        return CompositeStatus.FULLY_DISPATCHED
    if 0 < dispatched < ordered and not has_open_batch:
        return CompositeStatus.AWAITING_NEXT_BATCH
    if 0 < dispatched < ordered:
        return CompositeStatus.PARTIALLY_DISPATCHED
    if approved > dispatched and approved > 0:
        return CompositeStatus.READY_TO_DISPATCH
    if approved > 0 and qc_pending:
        return CompositeStatus.PARTIALLY_QC_APPROVED
    if produced > 0 or has_open_batch:
        return CompositeStatus.IN_PRODUCTION
    return CompositeStatus.PENDING


@dataclass(frozen=True)
class BatchCompletionFacts:
    state: BatchState
    final_status: GateStatus


BLOCKER_PRODUCTION_INCOMPLETE = "Production not complete for all batches"
BLOCKER_FINAL_QC_INCOMPLETE = "Final QC not complete for all batches"
BLOCKER_NOTHING_PACKED = "No quantity packed yet"


def completion_blockers(
    *,
    batches: list[BatchCompletionFacts],
    total_produced: int,
    ordered: int,
    total_packed: int,
) -> list[str]:
    """Blockers preventing work order completion, in reporting order."""
    blockers: list[str] = []
    if not batches or any(b.state is BatchState.OPEN for b in batches):
        blockers.append(BLOCKER_PRODUCTION_INCOMPLETE)
    if total_produced < ordered:
        blockers.append(f"Produced qty ({total_produced}) < ordered qty ({ordered})")
    if not batches or not all(b.final_status.is_cleared for b in batches):
        blockers.append(BLOCKER_FINAL_QC_INCOMPLETE)
    if total_packed <= 0:
        blockers.append(BLOCKER_NOTHING_PACKED)
    return blockers
