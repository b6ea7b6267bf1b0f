"""
Module: mda_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; ORM listeners reject UPDATE and DELETE.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      computed by AuditorService.
    - seq is strictly increasing, allocated by SequenceService.

Audit relevance:
    Every posting, rejection, invariant violation, reversal, period creation,
    period close and POS summary produces one row here, carrying the
    organization, category tag, amount and actor needed to reconstruct the
    decision.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from mda_kernel.db.base import Base, UUIDString
from mda_kernel.exceptions import ImmutabilityViolationError


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Posting lifecycle
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REVERSED = "transaction_reversed"
    POSTING_REJECTED = "posting_rejected"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"

    # Period lifecycle
    PERIOD_CREATED = "period_created"
    PERIOD_CLOSED = "period_closed"
    PERIOD_REOPENED = "period_reopened"

    # Invariant violations
    INVARIANT_VIOLATION = "invariant_violation"

    # POS end of day
    POS_SUMMARY_POSTED = "pos_summary_posted"
    POS_SUMMARY_REJECTED = "pos_summary_rejected"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        Rows are append-only.  Each row's hash includes the previous row's
        hash, so editing any row breaks every hash after it.

    Non-goals:
        Does NOT compute hashes itself; AuditorService owns that.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_org_action", "organization_id", "action"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    organization_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # e.g. "PostedTransaction", "FiscalPeriod", "FinanceEvent", "PosDailySummary"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(200), nullable=False)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="info")

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None


@event.listens_for(AuditEvent, "before_update")
def _prevent_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(f"Audit event #{target.seq} is append-only")


@event.listens_for(AuditEvent, "before_delete")
def _prevent_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(f"Audit event #{target.seq} cannot be deleted")
