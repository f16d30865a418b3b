"""
Pure lifecycle rules: trigger selection, eligibility, composite status,
completion blockers and the batch state machine.

No database; every function under test is total over its inputs.
"""

from datetime import datetime, timedelta, timezone

import pytest

from production_kernel.domain.dtos import LifecyclePolicy
from production_kernel.domain.lifecycle import (
    BLOCKER_FINAL_QC_INCOMPLETE,
    BLOCKER_NOTHING_PACKED,
    BLOCKER_PRODUCTION_INCOMPLETE,
    BatchCompletionFacts,
    BatchState,
    CompositeStatus,
    GateStatus,
    LatestBatchFacts,
    QCResult,
    TriggerReason,
    can_transition,
    completion_blockers,
    derive_composite_status,
    derive_eligibility,
    remaining_to_produce,
    select_trigger_reason,
)

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
GAP = timedelta(days=7)


def _facts(**overrides) -> LatestBatchFacts:
    values = dict(
        state=BatchState.OPEN,
        last_log_at=T0,
        last_dispatch_at=None,
        total_produced=40,
        requested_quantity=100,
    )
    values.update(overrides)
    return LatestBatchFacts(**values)


class TestTriggerSelection:
    def test_open_batch_without_events_is_kept(self):
        decision = select_trigger_reason(_facts(), now=T0 + timedelta(hours=1), gap_threshold=GAP)
        assert decision.reason is None
        assert not decision.spawns_batch

    def test_dispatch_of_latest_batch_spawns_post_dispatch(self):
        decision = select_trigger_reason(
            _facts(last_dispatch_at=T0 + timedelta(minutes=5)),
            now=T0 + timedelta(minutes=10),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.POST_DISPATCH

    def test_dispatch_in_start_instant_triggers(self):
        decision = select_trigger_reason(
            _facts(last_dispatch_at=T0), now=T0, gap_threshold=GAP
        )
        assert decision.reason is TriggerReason.POST_DISPATCH

    def test_manually_closed_batch_with_dispatch_is_post_dispatch(self):
        decision = select_trigger_reason(
            _facts(state=BatchState.CLOSED_SUPERSEDED, last_dispatch_at=T0),
            now=T0 + timedelta(hours=1),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.POST_DISPATCH

    def test_idle_longer_than_threshold_spawns_gap_restart(self):
        decision = select_trigger_reason(
            _facts(), now=T0 + GAP + timedelta(seconds=1), gap_threshold=GAP
        )
        assert decision.reason is TriggerReason.GAP_RESTART

    def test_idle_exactly_threshold_is_not_a_gap(self):
        decision = select_trigger_reason(_facts(), now=T0 + GAP, gap_threshold=GAP)
        assert decision.reason is None

    def test_batch_without_logs_never_gap_restarts(self):
        decision = select_trigger_reason(
            _facts(last_log_at=None), now=T0 + timedelta(days=30), gap_threshold=GAP
        )
        assert decision.reason is None

    def test_manually_closed_batch_spawns_resumed(self):
        decision = select_trigger_reason(
            _facts(state=BatchState.CLOSED_SUPERSEDED),
            now=T0 + timedelta(hours=1),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.RESUMED

    def test_completed_batch_short_of_quantity_spawns_post_complete(self):
        decision = select_trigger_reason(
            _facts(state=BatchState.CLOSED_COMPLETE, total_produced=60),
            now=T0 + timedelta(hours=1),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.POST_COMPLETE

    def test_completed_batch_with_quantity_met_is_kept(self):
        decision = select_trigger_reason(
            _facts(state=BatchState.CLOSED_COMPLETE, total_produced=100),
            now=T0 + timedelta(days=30),
            gap_threshold=GAP,
        )
        assert decision.reason is None

    def test_post_complete_outranks_post_dispatch(self):
        decision = select_trigger_reason(
            _facts(
                state=BatchState.CLOSED_COMPLETE,
                total_produced=60,
                last_dispatch_at=T0 + timedelta(minutes=5),
            ),
            now=T0 + timedelta(hours=1),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.POST_COMPLETE

    def test_post_dispatch_outranks_gap_restart(self):
        decision = select_trigger_reason(
            _facts(last_dispatch_at=T0 + timedelta(minutes=5)),
            now=T0 + timedelta(days=30),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.POST_DISPATCH

    def test_gap_restart_outranks_resumed(self):
        decision = select_trigger_reason(
            _facts(state=BatchState.CLOSED_SUPERSEDED),
            now=T0 + timedelta(days=30),
            gap_threshold=GAP,
        )
        assert decision.reason is TriggerReason.GAP_RESTART


class TestRemainingToProduce:
    @pytest.mark.parametrize(
        "requested, produced, expected",
        [(100, 0, 100), (100, 60, 40), (100, 100, 0), (100, 130, 0)],
    )
    def test_never_negative(self, requested, produced, expected):
        assert remaining_to_produce(requested, produced) == expected


class TestEligibility:
    def test_all_pending(self):
        assert derive_eligibility(
            GateStatus.PENDING, GateStatus.PENDING, GateStatus.PENDING
        ) == (False, False)

    def test_production_needs_material_and_first_piece(self):
        assert derive_eligibility(
            GateStatus.PASSED, GateStatus.PENDING, GateStatus.PASSED
        ) == (False, False)
        assert derive_eligibility(
            GateStatus.PASSED, GateStatus.WAIVED, GateStatus.PENDING
        ) == (True, False)

    def test_dispatch_needs_all_three(self):
        assert derive_eligibility(
            GateStatus.WAIVED, GateStatus.PASSED, GateStatus.PASSED
        ) == (True, True)

    def test_failed_gate_blocks(self):
        assert derive_eligibility(
            GateStatus.PASSED, GateStatus.PASSED, GateStatus.FAILED
        ) == (True, False)


class TestQCResult:
    @pytest.mark.parametrize("result", [QCResult.PASS, QCResult.FAIL, QCResult.WAIVED])
    def test_terminal_results(self, result):
        assert result.is_terminal

    @pytest.mark.parametrize("result", [QCResult.REWORK, QCResult.PENDING])
    def test_non_terminal_results_have_no_gate_status(self, result):
        assert not result.is_terminal
        with pytest.raises(ValueError):
            result.to_gate_status()

    def test_mapping(self):
        assert QCResult.PASS.to_gate_status() is GateStatus.PASSED
        assert QCResult.FAIL.to_gate_status() is GateStatus.FAILED
        assert QCResult.WAIVED.to_gate_status() is GateStatus.WAIVED


class TestStateMachine:
    def test_open_can_close_either_way(self):
        assert can_transition(BatchState.OPEN, BatchState.CLOSED_SUPERSEDED)
        assert can_transition(BatchState.OPEN, BatchState.CLOSED_COMPLETE)

    @pytest.mark.parametrize("closed", [BatchState.CLOSED_SUPERSEDED, BatchState.CLOSED_COMPLETE])
    def test_closed_states_are_terminal(self, closed):
        assert closed.is_closed
        for target in BatchState:
            assert not can_transition(closed, target)


class TestCompositeStatus:
    def _status(self, **kwargs) -> CompositeStatus:
        values = dict(
            ordered=100, produced=0, approved=0, rejected=0, dispatched=0, has_open_batch=False
        )
        values.update(kwargs)
        return derive_composite_status(**values)

    def test_pending(self):
        assert self._status() is CompositeStatus.PENDING

    def test_open_batch_without_output_is_in_production(self):
        assert self._status(has_open_batch=True) is CompositeStatus.IN_PRODUCTION

    def test_output_without_approval_is_in_production(self):
        assert self._status(produced=40, has_open_batch=True) is CompositeStatus.IN_PRODUCTION

    def test_approved_undispatched_is_ready(self):
        assert (
            self._status(produced=60, approved=40, has_open_batch=True)
            is CompositeStatus.READY_TO_DISPATCH
        )

    def test_ready_to_dispatch_outranks_partially_qc_approved(self):
        """Approved pieces waiting to ship win even while QC is still pending."""
        assert (
            self._status(produced=60, approved=20, rejected=10, has_open_batch=True)
            is CompositeStatus.READY_TO_DISPATCH
        )

    def test_partial_dispatch_with_open_batch(self):
        assert (
            self._status(produced=60, approved=60, dispatched=60, has_open_batch=True)
            is CompositeStatus.PARTIALLY_DISPATCHED
        )

    def test_partial_dispatch_without_open_batch_awaits_next(self):
        assert (
            self._status(produced=60, approved=60, dispatched=60, has_open_batch=False)
            is CompositeStatus.AWAITING_NEXT_BATCH
        )

    def test_fully_dispatched_outranks_everything(self):
        assert (
            self._status(produced=120, approved=110, dispatched=100, has_open_batch=True)
            is CompositeStatus.FULLY_DISPATCHED
        )


class TestCompletionBlockers:
    def _batch(self, state=BatchState.CLOSED_COMPLETE, final=GateStatus.PASSED):
        return BatchCompletionFacts(state=state, final_status=final)

    def test_no_blockers(self):
        assert completion_blockers(
            batches=[self._batch()], total_produced=100, ordered=100, total_packed=100
        ) == []

    def test_nothing_packed_is_the_only_blocker(self):
        assert completion_blockers(
            batches=[self._batch()], total_produced=100, ordered=100, total_packed=0
        ) == [BLOCKER_NOTHING_PACKED]

    def test_superseded_batches_count_as_closed(self):
        assert completion_blockers(
            batches=[self._batch(BatchState.CLOSED_SUPERSEDED), self._batch()],
            total_produced=100,
            ordered=100,
            total_packed=10,
        ) == []

    def test_all_blockers_in_order(self):
        blockers = completion_blockers(
            batches=[self._batch(BatchState.OPEN, GateStatus.PENDING)],
            total_produced=40,
            ordered=100,
            total_packed=0,
        )
        assert blockers == [
            BLOCKER_PRODUCTION_INCOMPLETE,
            "Produced qty (40) < ordered qty (100)",
            BLOCKER_FINAL_QC_INCOMPLETE,
            BLOCKER_NOTHING_PACKED,
        ]

    def test_no_batches_blocks(self):
        blockers = completion_blockers(batches=[], total_produced=0, ordered=100, total_packed=0)
        assert BLOCKER_PRODUCTION_INCOMPLETE in blockers
        assert BLOCKER_FINAL_QC_INCOMPLETE in blockers

    def test_waived_final_gate_counts_as_cleared(self):
        assert completion_blockers(
            batches=[self._batch(final=GateStatus.WAIVED)],
            total_produced=100,
            ordered=100,
            total_packed=1,
        ) == []


class TestLifecyclePolicy:
    def test_defaults(self):
        policy = LifecyclePolicy()
        assert policy.gap_threshold_days == 7
        assert policy.auto_open_qc_records is True

    @pytest.mark.parametrize("days", [0, -1])
    def test_gap_threshold_must_be_positive(self, days):
        with pytest.raises(ValueError):
            LifecyclePolicy(gap_threshold_days=days)
