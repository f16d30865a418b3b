"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant
    batch lifecycle change.  Provides chain validation for tamper detection
    and trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by BatchLifecycleService,
    QCGateService, DispatchService and RollupService.

Invariants enforced:
    - Sequence monotonicity via SequenceService.
    - Audit chain integrity: ``hash = H(... payload_hash, prev_hash)``.
    - Append-only: ORM listeners block UPDATE/DELETE on AuditEvent.

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash, or
      prev_hash does not match the predecessor's hash.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.exceptions import AuditChainBrokenError
from production_kernel.logging_config import get_logger
from production_kernel.models.audit_event import AuditAction, AuditEvent
from production_kernel.services.sequence_service import SequenceService
from production_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in sequence order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        Accepts domain-specific recording requests (batch created, QC gate
        finalized, dispatch created...) and creates append-only
        ``AuditEvent`` rows linked into a hash chain.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        The payload is normalized through canonical JSON first, so the
        stored JSON hashes to the same value after a database round-trip.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = json.loads(canonicalize_json(payload or {}))
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Domain-specific recording methods

    def record_batch_created(
        self,
        batch_id: UUID,
        work_order_id: UUID,
        batch_number: int,
        trigger_reason: str,
        batch_quantity: int,
        previous_batch_id: UUID | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ProductionBatch",
            entity_id=batch_id,
            action=AuditAction.BATCH_CREATED,
            actor_id=actor_id,
            payload={
                "work_order_id": work_order_id,
                "batch_number": batch_number,
                "trigger_reason": trigger_reason,
                "batch_quantity": batch_quantity,
                "previous_batch_id": previous_batch_id,
            },
        )

    def record_batch_closed(
        self,
        batch_id: UUID,
        batch_number: int,
        new_state: str,
        reason: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ProductionBatch",
            entity_id=batch_id,
            action=AuditAction.BATCH_CLOSED,
            actor_id=actor_id,
            payload={
                "batch_number": batch_number,
                "state": new_state,
                "reason": reason,
            },
        )

    def record_production_complete(
        self,
        batch_id: UUID,
        batch_number: int,
        produced_qty: int,
        reason: str | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ProductionBatch",
            entity_id=batch_id,
            action=AuditAction.BATCH_PRODUCTION_COMPLETE,
            actor_id=actor_id,
            payload={
                "batch_number": batch_number,
                "production_complete_qty": produced_qty,
                "reason": reason,
            },
        )

    def record_qc_gate_finalized(
        self,
        batch_id: UUID,
        record_id: UUID,
        gate_type: str,
        result: str,
        inspected_quantity: int,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ProductionBatch",
            entity_id=batch_id,
            action=AuditAction.QC_GATE_FINALIZED,
            actor_id=actor_id,
            payload={
                "qc_record_id": record_id,
                "gate_type": gate_type,
                "result": result,
                "inspected_quantity": inspected_quantity,
            },
        )

    def record_dispatch_created(
        self,
        dispatch_id: UUID,
        batch_id: UUID,
        work_order_id: UUID,
        quantity: int,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Dispatch",
            entity_id=dispatch_id,
            action=AuditAction.DISPATCH_CREATED,
            actor_id=actor_id,
            payload={
                "batch_id": batch_id,
                "work_order_id": work_order_id,
                "quantity": quantity,
            },
        )

    def record_dispatch_cancelled(
        self,
        dispatch_id: UUID,
        batch_id: UUID,
        quantity: int,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Dispatch",
            entity_id=dispatch_id,
            action=AuditAction.DISPATCH_CANCELLED,
            actor_id=actor_id,
            payload={"batch_id": batch_id, "quantity": quantity},
        )

    def record_work_order_completed(
        self,
        work_order_id: UUID,
        wo_number: str,
        totals: dict[str, int],
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="WorkOrder",
            entity_id=work_order_id,
            action=AuditAction.WORK_ORDER_COMPLETED,
            actor_id=actor_id,
            payload={"wo_number": wo_number, **totals},
        )

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"seq": events[0].seq})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, audit_event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=audit_event.entity_type,
                entity_id=str(audit_event.entity_id),
                action=audit_event.action,
                payload_hash=hash_payload(audit_event.payload or {}),
                prev_hash=audit_event.prev_hash,
            )
            if audit_event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": audit_event.seq})
                raise AuditChainBrokenError(str(audit_event.id), expected_hash, audit_event.hash)

            if i > 0 and audit_event.prev_hash != events[i - 1].hash:
                logger.critical("audit_chain_broken", extra={"seq": audit_event.seq})
                raise AuditChainBrokenError(
                    str(audit_event.id),
                    events[i - 1].hash,
                    audit_event.prev_hash or "None",
                )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Trace queries

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=e.seq,
                    action=AuditAction(e.action),
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    payload=e.payload or {},
                    hash=e.hash,
                )
                for e in events
            ),
        )

    def get_events_by_action(self, action: AuditAction) -> list[AuditEvent]:
        return list(
            self._session.execute(
                select(AuditEvent)
                .where(AuditEvent.action == action.value)
                .order_by(AuditEvent.seq)
            ).scalars().all()
        )
