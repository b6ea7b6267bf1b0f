"""
JournalWriter -- atomic persistence of balanced journal drafts.

Responsibility:
    Writes one ``PostedTransaction`` and its ``GLLine`` rows from a
    ``JournalDraft``.  Allocates the journal number, re-checks balance at the
    persistence boundary, and resolves unique-constraint races into either
    an idempotent hit or a typed error.

Architecture position:
    Kernel > Services.  Called only by the posting orchestrator.

Invariants enforced:
    - The transaction and all of its lines are written inside one savepoint;
      a failure part way through leaves nothing behind.
    - |total debit - total credit| < 0.01 in both currencies, checked again
      here even though JournalBuilder already checked it.
    - Unique (organization, idempotency key): a concurrent insert of the same
      event resolves to the winner's row.  The same key with a different
      payload fingerprint is an IdempotencyConflictError.
    - Unique reverses_transaction_id: a second reversal is an
      AlreadyReversedError.

Failure modes:
    - UnbalancedJournalError (invariant) when the draft does not balance.
    - IdempotencyConflictError, AlreadyReversedError from constraint races.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mda_kernel.domain.clock import Clock
from mda_kernel.domain.events import FinanceEvent, IngestionMetadata
from mda_kernel.domain.journal_builder import DraftLine, JournalDraft
from mda_kernel.domain.posting_rules import Side
from mda_kernel.domain.tax import TaxSplit
from mda_kernel.exceptions import (
    AlreadyReversedError,
    IdempotencyConflictError,
    UnbalancedJournalError,
)
from mda_kernel.logging_config import get_logger
from mda_kernel.models.fiscal_period import FiscalPeriod
from mda_kernel.models.transaction import GLLine, PostedTransaction
from mda_kernel.services.base import BaseService
from mda_kernel.services.sequence_service import SequenceService
from mda_kernel.utils.rounding import is_balanced

logger = get_logger("services.journal_writer")

ZERO = Decimal("0")
REVERSAL_SOURCE_SYSTEM = "reversal"


def format_journal_number(period_code: str, value: int) -> str:
    return f"JE-{period_code}-{value:06d}"


# =============================================================================
# Read DTOs
# =============================================================================


@dataclass(frozen=True)
class PostedLineInfo:
    line_number: int
    account_code: str
    account_name: str
    debit: Decimal
    credit: Decimal
    debit_base: Decimal
    credit_base: Decimal
    currency: str
    description: str

    @classmethod
    def from_model(cls, line: GLLine) -> PostedLineInfo:
        return cls(
            line_number=line.line_number,
            account_code=line.account_code,
            account_name=line.account_name,
            debit=Decimal(line.debit),
            credit=Decimal(line.credit),
            debit_base=Decimal(line.debit_base),
            credit_base=Decimal(line.credit_base),
            currency=line.currency,
            description=line.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "account_code": self.account_code,
            "account_name": self.account_name,
            "debit": str(self.debit) if self.debit else None,
            "credit": str(self.credit) if self.credit else None,
            "currency": self.currency,
            "description": self.description,
        }


@dataclass(frozen=True)
class PostedTransactionInfo:
    """Detached view of a posted transaction, safe to return to callers."""

    id: UUID
    journal_number: str
    organization_id: UUID
    smart_code: str
    period_code: str
    transaction_date: date
    currency: str
    base_currency: str
    exchange_rate: Decimal
    total_debit: Decimal
    total_credit: Decimal
    total_debit_base: Decimal
    total_credit_base: Decimal
    idempotency_key: str
    reverses_transaction_id: UUID | None
    lines: tuple[PostedLineInfo, ...]

    @classmethod
    def from_model(cls, txn: PostedTransaction) -> PostedTransactionInfo:
        return cls(
            id=txn.id,
            journal_number=txn.journal_number,
            organization_id=txn.organization_id,
            smart_code=txn.smart_code,
            period_code=txn.period_code,
            transaction_date=txn.transaction_date,
            currency=txn.transaction_currency,
            base_currency=txn.base_currency,
            exchange_rate=Decimal(txn.exchange_rate),
            total_debit=Decimal(txn.total_debit),
            total_credit=Decimal(txn.total_credit),
            total_debit_base=Decimal(txn.total_debit_base),
            total_credit_base=Decimal(txn.total_credit_base),
            idempotency_key=txn.idempotency_key,
            reverses_transaction_id=txn.reverses_transaction_id,
            lines=tuple(PostedLineInfo.from_model(line) for line in txn.lines),
        )

    @property
    def is_balanced(self) -> bool:
        return is_balanced(self.total_debit, self.total_credit) and is_balanced(
            self.total_debit_base, self.total_credit_base
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "journal_number": self.journal_number,
            "smart_code": self.smart_code,
            "period_code": self.period_code,
            "transaction_date": self.transaction_date.isoformat(),
            "currency": self.currency,
            "base_currency": self.base_currency,
            "total_debit": str(self.total_debit),
            "total_credit": str(self.total_credit),
            "reverses_transaction_id": (
                str(self.reverses_transaction_id) if self.reverses_transaction_id else None
            ),
            "lines": [line.to_dict() for line in self.lines],
        }


# =============================================================================
# Writer
# =============================================================================


class JournalWriter(BaseService):
    """
    Persists journal drafts.

    Contract:
        ``persist`` returns ``(transaction, created)``.  ``created`` is False
        when a concurrent request already posted the same event with the same
        fingerprint; the caller reports that as a duplicate.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._sequence_service = SequenceService(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_idempotency_key(
        self, organization_id: UUID, idempotency_key: str
    ) -> PostedTransaction | None:
        return self.session.execute(
            select(PostedTransaction).where(
                PostedTransaction.organization_id == organization_id,
                PostedTransaction.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def get(self, organization_id: UUID, transaction_id: UUID) -> PostedTransaction | None:
        txn = self.session.get(PostedTransaction, transaction_id)
        if txn is None or txn.organization_id != organization_id:
            return None
        return txn

    def find_reversal(self, transaction_id: UUID) -> PostedTransaction | None:
        return self.session.execute(
            select(PostedTransaction).where(
                PostedTransaction.reverses_transaction_id == transaction_id
            )
        ).scalar_one_or_none()

    def list_for_period(self, organization_id: UUID, period_code: str) -> list[PostedTransaction]:
        return list(
            self.session.execute(
                select(PostedTransaction)
                .where(
                    PostedTransaction.organization_id == organization_id,
                    PostedTransaction.period_code == period_code,
                )
                .order_by(PostedTransaction.journal_number)
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(
        self,
        draft: JournalDraft,
        event: FinanceEvent,
        period: FiscalPeriod,
        actor_id: UUID,
        config_version: str,
        reverses_transaction_id: UUID | None = None,
    ) -> tuple[PostedTransaction, bool]:
        """
        Write *draft* atomically.

        Raises:
            UnbalancedJournalError: totals differ by 0.01 or more.
            IdempotencyConflictError: key already used with another payload.
            AlreadyReversedError: the target already has a reversal.
        """
        self._check_balance(draft)
        fingerprint = event.fingerprint()

        savepoint = self.session.begin_nested()
        try:
            sequence_name = SequenceService.journal_sequence_name(
                draft.organization_id, draft.period_code
            )
            journal_number = format_journal_number(
                draft.period_code, self._sequence_service.next_value(sequence_name)
            )
            txn = PostedTransaction(
                organization_id=draft.organization_id,
                journal_number=journal_number,
                smart_code=draft.smart_code,
                event_kind=event.kind.value if event.kind else "",
                transaction_date=draft.transaction_date,
                period_id=period.id,
                period_code=draft.period_code,
                total_amount=event.total_amount,
                transaction_currency=draft.currency,
                base_currency=draft.base_currency,
                exchange_rate=draft.exchange_rate,
                total_debit=draft.total_debit,
                total_credit=draft.total_credit,
                total_debit_base=draft.total_debit_base,
                total_credit_base=draft.total_credit_base,
                net_amount=draft.tax_split.net,
                tax_amount=draft.tax_split.tax,
                tax_rate=draft.tax_split.rate,
                context=event.context.to_dict() if event.context else {},
                source_system=event.metadata.source_system,
                external_reference=event.metadata.external_reference,
                idempotency_key=draft.event_ref,
                payload_hash=fingerprint,
                config_version=config_version,
                reverses_transaction_id=reverses_transaction_id,
                actor_id=actor_id,
                posted_at=self._clock.now(),
            )
            self.session.add(txn)
            self.session.flush()

            for line in draft.lines:
                self.session.add(
                    GLLine(
                        transaction_id=txn.id,
                        organization_id=draft.organization_id,
                        line_number=line.line_number,
                        role=line.role,
                        account_code=line.account_code,
                        account_name=line.account_name,
                        debit=line.debit,
                        credit=line.credit,
                        debit_base=line.debit_base,
                        credit_base=line.credit_base,
                        currency=line.currency,
                        description=line.description,
                        event_ref=draft.event_ref,
                    )
                )
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.warning("concurrent_insert_conflict", extra={"event_ref": draft.event_ref})
            return self._resolve_conflict(draft, fingerprint, reverses_transaction_id), False

        self.session.refresh(txn, attribute_names=["lines"])
        logger.info(
            "journal_persisted",
            extra={
                "journal_number": journal_number,
                "line_count": len(draft.lines),
                "total_debit": str(draft.total_debit),
            },
        )
        return txn, True

    def _check_balance(self, draft: JournalDraft) -> None:
        if not is_balanced(draft.total_debit, draft.total_credit):
            logger.critical(
                "journal_unbalanced",
                extra={"total_debit": str(draft.total_debit), "total_credit": str(draft.total_credit)},
            )
            raise UnbalancedJournalError(str(draft.total_debit), str(draft.total_credit), draft.currency)
        if not is_balanced(draft.total_debit_base, draft.total_credit_base):
            logger.critical(
                "journal_unbalanced",
                extra={
                    "total_debit": str(draft.total_debit_base),
                    "total_credit": str(draft.total_credit_base),
                },
            )
            raise UnbalancedJournalError(
                str(draft.total_debit_base), str(draft.total_credit_base), draft.base_currency
            )

    def _resolve_conflict(
        self,
        draft: JournalDraft,
        fingerprint: str,
        reverses_transaction_id: UUID | None,
    ) -> PostedTransaction:
        if reverses_transaction_id is not None:
            existing_reversal = self.find_reversal(reverses_transaction_id)
            if existing_reversal is not None:
                raise AlreadyReversedError(str(reverses_transaction_id), str(existing_reversal.id))

        existing = self.find_by_idempotency_key(draft.organization_id, draft.event_ref)
        if existing is None:
            raise RuntimeError(f"Unresolvable integrity conflict for {draft.event_ref}")
        if existing.payload_hash != fingerprint:
            raise IdempotencyConflictError(draft.event_ref, str(existing.id))
        return existing

    # ------------------------------------------------------------------
    # Reversal support
    # ------------------------------------------------------------------

    @staticmethod
    def load_draft(txn: PostedTransaction) -> JournalDraft:
        """Rebuild the draft a posted transaction was written from."""
        lines = tuple(
            DraftLine(
                line_number=line.line_number,
                role=line.role,
                account_code=line.account_code,
                account_name=line.account_name,
                side=Side.DEBIT if Decimal(line.debit) > 0 else Side.CREDIT,
                amount=Decimal(line.debit) if Decimal(line.debit) > 0 else Decimal(line.credit),
                amount_base=(
                    Decimal(line.debit_base) if Decimal(line.debit) > 0 else Decimal(line.credit_base)
                ),
                currency=line.currency,
                description=line.description,
            )
            for line in txn.lines
        )
        net = Decimal(txn.net_amount)
        tax = Decimal(txn.tax_amount)
        return JournalDraft(
            organization_id=txn.organization_id,
            smart_code=txn.smart_code,
            event_ref=txn.idempotency_key,
            transaction_date=txn.transaction_date,
            period_code=txn.period_code,
            currency=txn.transaction_currency,
            base_currency=txn.base_currency,
            exchange_rate=Decimal(txn.exchange_rate),
            lines=lines,
            tax_split=TaxSplit(
                net=net, tax=tax, gross=net + tax, rate=Decimal(txn.tax_rate), inclusive=True
            ),
        )

    @staticmethod
    def reversal_event(txn: PostedTransaction, reversal_date: date) -> FinanceEvent:
        """The synthetic event a reversal is recorded under."""
        return FinanceEvent(
            organization_id=txn.organization_id,
            smart_code=txn.smart_code,
            transaction_date=reversal_date,
            total_amount=Decimal(txn.total_amount),
            transaction_currency=txn.transaction_currency,
            base_currency=txn.base_currency,
            exchange_rate=Decimal(txn.exchange_rate),
            metadata=IngestionMetadata(
                source_system=REVERSAL_SOURCE_SYSTEM,
                external_reference=str(txn.id),
                idempotency_key=f"reversal:{txn.id}",
            ),
        )
