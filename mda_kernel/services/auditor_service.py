"""
AuditorService -- tamper-evident audit trail for the posting engine.

Responsibility:
    Records one ``AuditEvent`` per significant decision: postings,
    rejections, suppressed duplicates, invariant violations, reversals,
    period creation and close, POS summaries.  Each row is chained to the
    previous one by hash.

Architecture position:
    Kernel > Services.  Called by the orchestrator and the period service;
    never by pure domain code.

Invariants enforced:
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - seq strictly increasing via SequenceService (the counter row lock also
      serializes chain appends).
    - Every record is flushed as soon as it is written.  Invariant
      violations are additionally logged at CRITICAL.

Failure modes:
    - validate_chain() returns False on a broken link or tampered row.

Audit relevance:
    Payloads carry organization, smart code, amount, actor and error code:
    enough to reconstruct why an event was or was not posted.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mda_kernel.domain.clock import Clock
from mda_kernel.logging_config import get_logger
from mda_kernel.models.audit_event import AuditAction, AuditEvent
from mda_kernel.services.base import BaseService
from mda_kernel.services.sequence_service import SequenceService
from mda_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")

# Actor recorded for system-initiated actions such as lazy period creation
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")


class AuditorService(BaseService):
    """
    Appends to the audit hash chain.

    Contract:
        Writes inside the caller's transaction.  A rejection recorded after
        the posting savepoint rolled back survives as long as the caller
        commits the outer transaction.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self.session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def _record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        actor_id: UUID,
        organization_id: UUID | None,
        payload: dict[str, Any],
        severity: str = "info",
    ) -> AuditEvent:
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()
        payload_hash = hash_payload(payload)

        audit_event = AuditEvent(
            seq=seq,
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            severity=severity,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=hash_audit_event(entity_type, str(entity_id), action.value, payload_hash, prev_hash),
        )
        self.session.add(audit_event)
        self.session.flush()

        logger.info(
            "audit_event_recorded",
            extra={"seq": seq, "action": action.value, "entity_type": entity_type},
        )
        return audit_event

    # ------------------------------------------------------------------
    # Posting lifecycle
    # ------------------------------------------------------------------

    def record_posting(
        self,
        transaction_id: UUID,
        organization_id: UUID,
        smart_code: str,
        amount: str,
        currency: str,
        period_code: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._record(
            entity_type="PostedTransaction",
            entity_id=str(transaction_id),
            action=AuditAction.TRANSACTION_POSTED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={
                "smart_code": smart_code,
                "amount": amount,
                "currency": currency,
                "period_code": period_code,
            },
        )

    def record_rejection(
        self,
        event_ref: str,
        organization_id: UUID | None,
        smart_code: str,
        amount: str,
        actor_id: UUID,
        error_code: str,
        error_message: str,
        field: str | None = None,
    ) -> AuditEvent:
        return self._record(
            entity_type="FinanceEvent",
            entity_id=event_ref,
            action=AuditAction.POSTING_REJECTED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={
                "smart_code": smart_code,
                "amount": amount,
                "error_code": error_code,
                "error_message": error_message,
                "field": field,
            },
            severity="warning",
        )

    def record_duplicate(
        self,
        event_ref: str,
        organization_id: UUID,
        existing_transaction_id: UUID,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._record(
            entity_type="FinanceEvent",
            entity_id=event_ref,
            action=AuditAction.DUPLICATE_SUPPRESSED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"existing_transaction_id": str(existing_transaction_id)},
        )

    def record_invariant_violation(
        self,
        entity_type: str,
        entity_ref: str,
        organization_id: UUID | None,
        actor_id: UUID,
        error_code: str,
        details: dict[str, Any],
    ) -> AuditEvent:
        """Critical: logged at CRITICAL and flushed before returning."""
        logger.critical(
            "invariant_violation",
            extra={"error_code": error_code, "entity_type": entity_type, "entity_ref": entity_ref, **details},
        )
        return self._record(
            entity_type=entity_type,
            entity_id=entity_ref,
            action=AuditAction.INVARIANT_VIOLATION,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"error_code": error_code, **details},
            severity="critical",
        )

    def record_reversal(
        self,
        reversal_id: UUID,
        original_id: UUID,
        organization_id: UUID,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._record(
            entity_type="PostedTransaction",
            entity_id=str(original_id),
            action=AuditAction.TRANSACTION_REVERSED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"reversal_id": str(reversal_id)},
        )

    # ------------------------------------------------------------------
    # Period lifecycle
    # ------------------------------------------------------------------

    def record_period_created(
        self, period_id: UUID, organization_id: UUID, period_code: str, status: str, actor_id: UUID
    ) -> AuditEvent:
        return self._record(
            entity_type="FiscalPeriod",
            entity_id=str(period_id),
            action=AuditAction.PERIOD_CREATED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"period_code": period_code, "status": status},
        )

    def record_period_closed(
        self, period_id: UUID, organization_id: UUID, period_code: str, actor_id: UUID
    ) -> AuditEvent:
        return self._record(
            entity_type="FiscalPeriod",
            entity_id=str(period_id),
            action=AuditAction.PERIOD_CLOSED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"period_code": period_code},
        )

    def record_period_reopened(
        self, period_id: UUID, organization_id: UUID, period_code: str, reason: str, actor_id: UUID
    ) -> AuditEvent:
        return self._record(
            entity_type="FiscalPeriod",
            entity_id=str(period_id),
            action=AuditAction.PERIOD_REOPENED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"period_code": period_code, "reason": reason},
            severity="warning",
        )

    # ------------------------------------------------------------------
    # POS end of day
    # ------------------------------------------------------------------

    def record_pos_summary(
        self,
        summary_ref: str,
        organization_id: UUID,
        actor_id: UUID,
        transaction_ids: list[str],
        totals: dict[str, str],
    ) -> AuditEvent:
        return self._record(
            entity_type="PosDailySummary",
            entity_id=summary_ref,
            action=AuditAction.POS_SUMMARY_POSTED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"transaction_ids": transaction_ids, "totals": totals},
        )

    def record_pos_rejection(
        self,
        summary_ref: str,
        organization_id: UUID,
        actor_id: UUID,
        error_code: str,
        violations: list[dict[str, str]],
    ) -> AuditEvent:
        return self._record(
            entity_type="PosDailySummary",
            entity_id=summary_ref,
            action=AuditAction.POS_SUMMARY_REJECTED,
            actor_id=actor_id,
            organization_id=organization_id,
            payload={"error_code": error_code, "violations": violations},
            severity="warning",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_chain(self) -> bool:
        """Recompute every hash in seq order; False on the first mismatch."""
        prev_hash: str | None = None
        for audit_event in self.session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars():
            if audit_event.prev_hash != prev_hash:
                logger.error("audit_chain_broken", extra={"seq": audit_event.seq, "reason": "prev_hash"})
                return False
            if hash_payload(audit_event.payload or {}) != audit_event.payload_hash:
                logger.error("audit_chain_broken", extra={"seq": audit_event.seq, "reason": "payload"})
                return False
            expected = hash_audit_event(
                audit_event.entity_type,
                audit_event.entity_id,
                audit_event.action,
                audit_event.payload_hash,
                audit_event.prev_hash,
            )
            if expected != audit_event.hash:
                logger.error("audit_chain_broken", extra={"seq": audit_event.seq, "reason": "hash"})
                return False
            prev_hash = audit_event.hash
        return True

    def get_trail(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return list(
            self.session.execute(
                select(AuditEvent)
                .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
                .order_by(AuditEvent.seq)
            ).scalars()
        )

    def get_events(self, organization_id: UUID, action: AuditAction | None = None) -> list[AuditEvent]:
        stmt = select(AuditEvent).where(AuditEvent.organization_id == organization_id)
        if action is not None:
            stmt = stmt.where(AuditEvent.action == action.value)
        return list(self.session.execute(stmt.order_by(AuditEvent.seq)).scalars())
