"""
Module: mda_kernel.models.transaction
Responsibility: ORM persistence for posted transactions and their GL lines.
Architecture position: Kernel > Models.  May import from db/base.py and
    exceptions only.

Invariants enforced:
    - A posted transaction and its lines are immutable.  ORM listeners reject
      any UPDATE or DELETE; corrections are new offsetting transactions that
      point back through reverses_transaction_id.
    - (organization_id, idempotency_key) is unique: one journal per real
      world event.
    - reverses_transaction_id is unique: a transaction is reversed at most
      once.
    - Each line carries exactly one non-zero side (CHECK constraint).

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE of a posted row.
    - IntegrityError on a duplicate idempotency key or double reversal;
      JournalWriter resolves both into typed errors.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mda_kernel.db.base import Base, UUIDString
from mda_kernel.exceptions import ImmutabilityViolationError


class PostedTransaction(Base):
    """
    One immutable journal produced from one finance event.

    Totals are stored alongside the lines so auditors can verify balance
    without re-summing; JournalWriter refuses to persist a transaction whose
    totals differ by 0.01 or more.
    """

    __tablename__ = "posted_transactions"

    __table_args__ = (
        UniqueConstraint("organization_id", "idempotency_key", name="uq_posted_txn_idempotency"),
        UniqueConstraint("reverses_transaction_id", name="uq_posted_txn_reverses"),
        Index("idx_posted_txn_org_period", "organization_id", "period_code"),
        Index("idx_posted_txn_smart_code", "smart_code"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # JE-YYYY-MM-000001, allocated per organization and period
    journal_number: Mapped[str] = mapped_column(String(40), nullable=False)

    smart_code: Mapped[str] = mapped_column(String(100), nullable=False)

    event_kind: Mapped[str] = mapped_column(String(30), nullable=False)

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("fiscal_periods.id"), nullable=False
    )

    period_code: Mapped[str] = mapped_column(String(7), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    transaction_currency: Mapped[str] = mapped_column(String(3), nullable=False)

    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)

    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)

    total_debit: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    total_credit: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    total_debit_base: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    total_credit_base: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    net_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    tax_amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    tax_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)

    # Sanitized business context (typed variant, serialized)
    context: Mapped[dict] = mapped_column(JSON, nullable=False)

    source_system: Mapped[str] = mapped_column(String(100), nullable=False)

    external_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)

    # Fingerprint of the business content, used to detect key reuse
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    config_version: Mapped[str] = mapped_column(String(100), nullable=False)

    reverses_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("posted_transactions.id"), nullable=True
    )

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    lines: Mapped[list["GLLine"]] = relationship(
        back_populates="transaction",
        order_by="GLLine.line_number",
        cascade="save-update, merge",
    )

    def __repr__(self) -> str:
        return f"<PostedTransaction {self.journal_number} {self.smart_code}>"


class GLLine(Base):
    """One debit or credit against a chart-of-accounts code."""

    __tablename__ = "gl_lines"

    __table_args__ = (
        UniqueConstraint("transaction_id", "line_number", name="uq_gl_line_number"),
        CheckConstraint(
            "(debit = 0 AND credit > 0) OR (credit = 0 AND debit > 0)",
            name="ck_gl_line_one_side",
        ),
        Index("idx_gl_line_account", "organization_id", "account_code"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("posted_transactions.id"), nullable=False
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    role: Mapped[str] = mapped_column(String(50), nullable=False)

    account_code: Mapped[str] = mapped_column(String(20), nullable=False)

    account_name: Mapped[str] = mapped_column(String(200), nullable=False)

    debit: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    credit: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    debit_base: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    credit_base: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    event_ref: Mapped[str] = mapped_column(String(200), nullable=False)

    transaction: Mapped[PostedTransaction] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<GLLine {self.line_number} {self.account_code} Dr {self.debit} Cr {self.credit}>"


# =============================================================================
# ORM-level immutability
# =============================================================================


@event.listens_for(PostedTransaction, "before_update")
def _prevent_transaction_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        f"Posted transaction {target.id} is immutable; post a reversal instead"
    )


@event.listens_for(PostedTransaction, "before_delete")
def _prevent_transaction_delete(mapper, connection, target):
    raise ImmutabilityViolationError(f"Posted transaction {target.id} cannot be deleted")


@event.listens_for(GLLine, "before_update")
def _prevent_line_update(mapper, connection, target):
    raise ImmutabilityViolationError(f"GL line {target.id} is immutable")


@event.listens_for(GLLine, "before_delete")
def _prevent_line_delete(mapper, connection, target):
    raise ImmutabilityViolationError(f"GL line {target.id} cannot be deleted")
