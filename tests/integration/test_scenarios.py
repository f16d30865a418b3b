"""
End-to-end work order flows through the WorkOrderService facade.

Each scenario drives a 100-piece work order from intake to dispatch or
completion the way the shop floor does: production logs, QC stations,
packing and the dispatch desk.
"""

import pytest

from production_kernel.domain.lifecycle import (
    BLOCKER_NOTHING_PACKED,
    BatchState,
    CompositeStatus,
    GateStatus,
    GateType,
    TriggerReason,
)
from production_kernel.exceptions import GateNotSatisfiedError, QuantityExceededError
from production_kernel.models.audit_event import AuditAction


@pytest.fixture
def fully_inspected_batch(service, work_order_id, test_actor_id, clear_for_production, pass_gate, deterministic_clock):
    """100 pieces logged, all gates passed with 100 approved."""
    batch_id = service.record_production(work_order_id, 100, 0, test_actor_id).batch_id
    clear_for_production(work_order_id, batch_id)
    pass_gate(work_order_id, batch_id, GateType.FINAL, 100)
    deterministic_clock.advance(60)
    return batch_id


class TestFullOrderShipped:
    def test_produce_inspect_pack_ship(self, service, work_order_id, test_actor_id, fully_inspected_batch):
        batch_id = fully_inspected_batch

        [batch] = service.get_batch_statuses(work_order_id)
        assert batch.qc_approved_qty == 100
        assert batch.dispatch_allowed

        service.pack_carton(batch_id, 100, test_actor_id)
        dispatch = service.dispatch(batch_id, work_order_id, 100, test_actor_id)

        assert dispatch.quantity == 100
        status = service.get_work_order_status(work_order_id)
        assert status.composite_status is CompositeStatus.FULLY_DISPATCHED
        assert status.dispatched_qty == 100
        assert status.remaining_qty == 0

    def test_audit_trail_of_the_batch(self, service, work_order_id, test_actor_id, fully_inspected_batch):
        batch_id = fully_inspected_batch
        service.pack_carton(batch_id, 100, test_actor_id)
        service.dispatch(batch_id, work_order_id, 100, test_actor_id)

        trace = service.auditor.get_trace("ProductionBatch", batch_id)

        assert trace.actions == (
            AuditAction.BATCH_CREATED,
            AuditAction.QC_GATE_FINALIZED,
            AuditAction.QC_GATE_FINALIZED,
            AuditAction.QC_GATE_FINALIZED,
        )
        assert service.auditor.validate_chain()


class TestOverDispatch:
    def test_dispatch_beyond_packed_rejected(self, service, work_order_id, test_actor_id, fully_inspected_batch):
        batch_id = fully_inspected_batch
        service.pack_carton(batch_id, 100, test_actor_id)

        with pytest.raises(QuantityExceededError) as exc_info:
            service.dispatch(batch_id, work_order_id, 150, test_actor_id)

        assert exc_info.value.requested == 150
        assert exc_info.value.available == 100
        assert service.get_work_order_status(work_order_id).dispatched_qty == 0


class TestNextBatchAfterDispatch:
    def test_post_dispatch_batch_starts_with_pending_gates(
        self, service, work_order_id, test_actor_id, ready_batch, deterministic_clock
    ):
        first = ready_batch(work_order_id, produced=60)
        service.dispatch(first, work_order_id, 60, test_actor_id)
        deterministic_clock.advance(3600)

        result = service.record_production(work_order_id, 5, 0, test_actor_id)

        assert result.batch_id != first
        assert result.batch_number == 2
        batches = service.get_batch_statuses(work_order_id)
        previous, current = batches
        assert previous.state is BatchState.CLOSED_SUPERSEDED
        assert current.trigger_reason is TriggerReason.POST_DISPATCH
        assert current.batch_quantity == 40
        assert current.previous_batch_id == first
        assert all(gate.status is GateStatus.PENDING for gate in current.gates)
        assert not current.dispatch_allowed
        assert previous.dispatch_allowed


class TestFinalGatePending:
    def test_dispatch_names_the_pending_batch(
        self, service, work_order_id, test_actor_id, clear_for_production, deterministic_clock
    ):
        batch_id = service.record_production(work_order_id, 100, 0, test_actor_id).batch_id
        clear_for_production(work_order_id, batch_id)
        deterministic_clock.advance(60)

        with pytest.raises(GateNotSatisfiedError) as exc_info:
            service.dispatch(batch_id, work_order_id, 100, test_actor_id)

        assert exc_info.value.batch_number == 1
        assert "batch #1 final QC is pending, 0 of 100 ordered approved" in str(exc_info.value)


class TestCompletionWithoutPacking:
    def test_only_packing_blocks(self, service, work_order_id, test_actor_id, fully_inspected_batch):
        service.mark_batch_production_complete(fully_inspected_batch, test_actor_id)

        check = service.check_completion(work_order_id)

        assert not check.can_complete
        assert list(check.blockers) == [BLOCKER_NOTHING_PACKED]
        assert check.blockers == ("No quantity packed yet",)
