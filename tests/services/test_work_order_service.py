"""
WorkOrderService facade: work order intake, quantity revision, transaction
rollback, completion and the completed-work-order guards.
"""

from datetime import date
from uuid import uuid4

import pytest

from production_kernel.domain.lifecycle import (
    BLOCKER_FINAL_QC_INCOMPLETE,
    BLOCKER_NOTHING_PACKED,
    BLOCKER_PRODUCTION_INCOMPLETE,
    CompositeStatus,
)
from production_kernel.exceptions import (
    CompletionBlockedError,
    QuantityExceededError,
    ValidationError,
    WorkOrderCompletedError,
    WorkOrderNotFoundError,
)
from production_kernel.logging_config import LogContext
from production_kernel.models.audit_event import AuditAction
from production_kernel.models.production_batch import ProductionBatchModel


@pytest.fixture
def completed_work_order(service, work_order_id, test_actor_id, ready_batch):
    """A 100-piece work order produced, inspected, packed, half shipped and completed."""
    batch_id = ready_batch(work_order_id, produced=100)
    dispatch = service.dispatch(batch_id, work_order_id, 50, test_actor_id)
    service.mark_batch_production_complete(batch_id, test_actor_id)
    service.mark_complete(work_order_id, test_actor_id)
    return work_order_id, batch_id, dispatch.id


class TestCreateWorkOrder:
    def test_create(self, service, test_actor_id):
        work_order_id = service.create_work_order(
            "WO-7781", 250, test_actor_id, due_date=date(2024, 3, 1), item_code="BRKT-12"
        )

        status = service.get_work_order_status(work_order_id)

        assert status.wo_number == "WO-7781"
        assert status.requested_quantity == 250
        assert status.remaining_qty == 250
        assert status.due_date == date(2024, 3, 1)
        assert status.composite_status is CompositeStatus.PENDING
        assert status.batch_count == 0
        assert not status.is_complete

    def test_number_is_stripped(self, service, test_actor_id):
        work_order_id = service.create_work_order("  WO-9  ", 5, test_actor_id)
        assert service.get_work_order_status(work_order_id).wo_number == "WO-9"

    def test_duplicate_number_rejected(self, service, test_actor_id):
        service.create_work_order("WO-1", 10, test_actor_id)
        with pytest.raises(ValidationError) as exc_info:
            service.create_work_order(" WO-1 ", 20, test_actor_id)
        assert exc_info.value.field == "wo_number"

    @pytest.mark.parametrize("quantity", [0, -10])
    def test_non_positive_quantity_rejected(self, service, test_actor_id, quantity):
        with pytest.raises(ValidationError):
            service.create_work_order("WO-2", quantity, test_actor_id)

    @pytest.mark.parametrize("wo_number", ["", "   "])
    def test_blank_number_rejected(self, service, test_actor_id, wo_number):
        with pytest.raises(ValidationError):
            service.create_work_order(wo_number, 10, test_actor_id)

    def test_unknown_work_order(self, service):
        with pytest.raises(WorkOrderNotFoundError):
            service.get_work_order_status(uuid4())


class TestReviseQuantity:
    def test_existing_batch_keeps_its_quantity(self, service, session, work_order_id, test_actor_id):
        batch_id = service.record_production(work_order_id, 50, 0, test_actor_id).batch_id

        totals = service.revise_quantity(work_order_id, 150, test_actor_id)

        assert totals.remaining_qty == 150
        assert session.get(ProductionBatchModel, batch_id).batch_quantity == 100
        assert service.remaining_to_produce(work_order_id) == 100

    def test_lowering_below_produced_clamps_remaining(self, service, work_order_id, test_actor_id):
        service.record_production(work_order_id, 80, 0, test_actor_id)
        service.revise_quantity(work_order_id, 60, test_actor_id)
        assert service.remaining_to_produce(work_order_id) == 0

    def test_non_positive_rejected(self, service, work_order_id, test_actor_id):
        with pytest.raises(ValidationError):
            service.revise_quantity(work_order_id, 0, test_actor_id)


class TestTransactionBoundary:
    def test_failed_operation_rolls_back_and_logs(
        self, service, work_order_id, test_actor_id, ready_batch, captured_logs
    ):
        batch_id = ready_batch(work_order_id, produced=50, packed=0)

        with pytest.raises(QuantityExceededError):
            service.dispatch(batch_id, work_order_id, 10, test_actor_id)

        rolled_back = [r for r in captured_logs() if r["message"] == "transaction_rolled_back"]
        assert len(rolled_back) == 1
        assert rolled_back[0]["error_code"] == "QUANTITY_EXCEEDED"
        assert rolled_back[0]["operation"] == "dispatch"
        assert rolled_back[0]["exc_type"] == "QuantityExceededError"
        assert service.get_work_order_status(work_order_id).dispatched_qty == 0

    def test_session_usable_after_rollback(self, service, work_order_id, test_actor_id, ready_batch):
        batch_id = ready_batch(work_order_id, produced=50, packed=20)
        with pytest.raises(QuantityExceededError):
            service.dispatch(batch_id, work_order_id, 21, test_actor_id)

        service.dispatch(batch_id, work_order_id, 20, test_actor_id)

        assert service.get_work_order_status(work_order_id).dispatched_qty == 20

    def test_each_call_gets_its_own_correlation_id(
        self, service, work_order_id, test_actor_id, captured_logs
    ):
        service.record_production(work_order_id, 10, 0, test_actor_id)
        service.record_production(work_order_id, 5, 0, test_actor_id)

        logged = [r for r in captured_logs() if r["message"] == "production_logged"]

        assert len(logged) == 2
        assert all(r["operation"] == "record_production" for r in logged)
        assert all(r["work_order_id"] == str(work_order_id) for r in logged)
        assert logged[0]["correlation_id"] != logged[1]["correlation_id"]

    def test_context_cleared_after_call(self, service, work_order_id, test_actor_id):
        service.record_production(work_order_id, 10, 0, test_actor_id)

        assert LogContext.get_all() == {}


class TestCompletion:
    def test_blockers_of_untouched_work_order(self, service, work_order_id, test_actor_id):
        with pytest.raises(CompletionBlockedError) as exc_info:
            service.mark_complete(work_order_id, test_actor_id)

        assert exc_info.value.blockers == [
            BLOCKER_PRODUCTION_INCOMPLETE,
            "Produced qty (0) < ordered qty (100)",
            BLOCKER_FINAL_QC_INCOMPLETE,
            BLOCKER_NOTHING_PACKED,
        ]
        assert str(exc_info.value).startswith("Cannot mark WO complete. Blockers: ")
        assert not service.get_work_order_status(work_order_id).is_complete

    def test_check_completion_matches(self, service, work_order_id, test_actor_id, ready_batch):
        ready_batch(work_order_id, produced=100)

        check = service.check_completion(work_order_id)

        assert not check.can_complete
        assert check.blockers == (BLOCKER_PRODUCTION_INCOMPLETE,)

    def test_complete(self, service, completed_work_order, deterministic_clock):
        work_order_id, _, _ = completed_work_order
        status = service.get_work_order_status(work_order_id)
        assert status.is_complete
        assert status.completed_at == deterministic_clock.now()

    def test_complete_is_audited_once(self, service, completed_work_order, test_actor_id):
        work_order_id, _, _ = completed_work_order

        service.mark_complete(work_order_id, test_actor_id)

        trace = service.auditor.get_trace("WorkOrder", work_order_id)
        assert trace.actions.count(AuditAction.WORK_ORDER_COMPLETED) == 1

    def test_completion_does_not_require_full_dispatch(self, service, completed_work_order):
        work_order_id, _, _ = completed_work_order
        status = service.get_work_order_status(work_order_id)
        assert status.dispatched_qty == 50
        assert status.remaining_qty == 50


class TestCompletedWorkOrderGuards:
    def test_no_more_production(self, service, completed_work_order, test_actor_id):
        work_order_id, _, _ = completed_work_order
        with pytest.raises(WorkOrderCompletedError):
            service.record_production(work_order_id, 1, 0, test_actor_id)

    def test_no_quantity_revision(self, service, completed_work_order, test_actor_id):
        work_order_id, _, _ = completed_work_order
        with pytest.raises(WorkOrderCompletedError):
            service.revise_quantity(work_order_id, 200, test_actor_id)

    def test_no_dispatch_cancellation(self, service, completed_work_order, test_actor_id):
        work_order_id, _, dispatch_id = completed_work_order
        with pytest.raises(WorkOrderCompletedError) as exc_info:
            service.cancel_dispatch(dispatch_id, test_actor_id)
        assert exc_info.value.code == "WORK_ORDER_COMPLETED"
        assert service.get_work_order_status(work_order_id).dispatched_qty == 50

    def test_remaining_packed_stock_still_ships(self, service, completed_work_order, test_actor_id):
        work_order_id, batch_id, _ = completed_work_order

        service.dispatch(batch_id, work_order_id, 50, test_actor_id)

        status = service.get_work_order_status(work_order_id)
        assert status.composite_status is CompositeStatus.FULLY_DISPATCHED
