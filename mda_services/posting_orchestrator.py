"""
mda_services.posting_orchestrator -- the posting pipeline and its DI container.

Responsibility:
    Creates every kernel service exactly once, wires them together around
    one injected ``ConfigurationSnapshot``, and runs finance events through
    the pipeline:

        validate -> idempotency lookup -> period gate -> resolve rule
        -> VAT split -> build lines -> balance check -> persist -> audit

    Also exposes the period query, period close and reopen, transaction
    reversal and the trial balance.

Architecture position:
    Services -- the composition root.  Alternate entry points (POS end of
    day, natural language) are built on top of an orchestrator and never
    bypass it.

Invariants enforced:
    - Everything from the period gate to the audit record runs inside one
      savepoint.  Any failure rolls the savepoint back, so a rejected event
      leaves no period, journal, line or sequence value behind.
    - Rejections are audited AFTER the rollback, in the caller's outer
      transaction, so the audit row survives the failed posting.
    - Invariant violations are logged at CRITICAL and audited immediately.
    - Storage work runs under the RetryPolicy; only transient errors retry.
    - dry_run rolls the savepoint back unconditionally and audits nothing.

Failure modes:
    - Business failures never raise: they come back as a ``PostingResult``
      with ``error_code`` set.
    - Programming and unexpected storage errors propagate.

Audit relevance:
    Every posted, duplicate and rejected event produces one audit row
    carrying organization, smart code, amount, actor and error code.

Usage:
    with session_scope() as session:
        orchestrator = PostingOrchestrator(session, get_active_config(), clock)
        result = orchestrator.post_event(event, actor_id)
        if not result.success:
            print(result.error_code, result.violations)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from mda_config.schema import ConfigurationSnapshot, OrganizationProfile
from mda_kernel.domain.clock import Clock, SystemClock
from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.event_validator import EventValidator
from mda_kernel.domain.events import FinanceEvent
from mda_kernel.domain.journal_builder import JournalBuilder, JournalDraft
from mda_kernel.domain.posting_rules import PostingRule
from mda_kernel.domain.tax import TaxSplit, VatCalculator
from mda_kernel.exceptions import (
    AlreadyReversedError,
    EventValidationError,
    IdempotencyConflictError,
    MdaError,
    SchemaViolation,
    TransactionNotFoundError,
)
from mda_kernel.logging_config import LogContext, get_logger
from mda_kernel.selectors.ledger_selector import LedgerSelector, TrialBalanceRow
from mda_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from mda_kernel.services.journal_writer import JournalWriter, PostedTransactionInfo
from mda_kernel.services.period_service import FiscalPeriodInfo, PeriodCheck, PeriodService
from mda_kernel.services.resilience import RetryPolicy
from mda_kernel.utils.rounding import is_balanced

logger = get_logger("services.posting_orchestrator")


class PostingStatus(str, Enum):
    POSTED = "posted"
    ALREADY_POSTED = "already_posted"
    DRY_RUN = "dry_run"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PostingResult:
    """Outcome of posting (or reversing) one event."""

    status: PostingStatus
    event_ref: str
    transaction: PostedTransactionInfo | None = None
    draft: JournalDraft | None = None
    error_code: str | None = None
    error_message: str | None = None
    violations: tuple[SchemaViolation, ...] = ()
    error_category: str | None = None

    @classmethod
    def rejected(cls, event_ref: str, exc: MdaError) -> PostingResult:
        return cls(
            status=PostingStatus.REJECTED,
            event_ref=event_ref,
            error_code=exc.code,
            error_category=exc.category,
            error_message=exc.message,
            violations=tuple(getattr(exc, "violations", ())),
        )

    @property
    def success(self) -> bool:
        return self.status is not PostingStatus.REJECTED

    @property
    def duplicate(self) -> bool:
        return self.status is PostingStatus.ALREADY_POSTED

    @property
    def dry_run(self) -> bool:
        return self.status is PostingStatus.DRY_RUN

    @property
    def transaction_id(self) -> UUID | None:
        return self.transaction.id if self.transaction else None

    @property
    def journal_number(self) -> str | None:
        return self.transaction.journal_number if self.transaction else None

    @property
    def lines(self) -> list[dict[str, Any]]:
        if self.transaction is not None:
            return [line.to_dict() for line in self.transaction.lines]
        if self.draft is not None:
            return [line.to_dict() for line in self.draft.lines]
        return []

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "event_ref": self.event_ref,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "journal_number": self.journal_number,
            "duplicate": self.duplicate,
            "dry_run": self.dry_run,
            "lines": self.lines,
        }
        if self.transaction is not None:
            data["totals"] = {
                "debit": str(self.transaction.total_debit),
                "credit": str(self.transaction.total_credit),
            }
        elif self.draft is not None:
            data["totals"] = {
                "debit": str(self.draft.total_debit),
                "credit": str(self.draft.total_credit),
            }
            data["tax"] = self.draft.tax_split.to_dict()
        if self.error_code:
            data["error"] = {
                "code": self.error_code,
                "message": self.error_message,
                "violations": [v.to_dict() for v in self.violations],
            }
        return data


@dataclass(frozen=True)
class PeriodCloseResult:
    """Outcome of closing or reopening a period."""

    success: bool
    period: FiscalPeriodInfo | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "period": self.period.to_dict() if self.period else None,
            "error": {"code": self.error_code, "message": self.error_message} if self.error_code else None,
        }


@dataclass(frozen=True)
class TrialBalance:
    """Per-account totals for one organization, optionally one period."""

    organization_id: UUID
    period_code: str | None
    base_currency: str
    rows: tuple[TrialBalanceRow, ...] = ()

    @property
    def total_debit_base(self) -> Decimal:
        return sum((row.debit_total_base for row in self.rows), Decimal("0"))

    @property
    def total_credit_base(self) -> Decimal:
        return sum((row.credit_total_base for row in self.rows), Decimal("0"))

    @property
    def is_balanced(self) -> bool:
        if not is_balanced(self.total_debit_base, self.total_credit_base):
            return False
        for currency in {row.currency for row in self.rows}:
            rows = [row for row in self.rows if row.currency == currency]
            debit = sum((row.debit_total for row in rows), Decimal("0"))
            credit = sum((row.credit_total for row in rows), Decimal("0"))
            if not is_balanced(debit, credit):
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": str(self.organization_id),
            "period_code": self.period_code,
            "base_currency": self.base_currency,
            "rows": [row.to_dict() for row in self.rows],
            "total_debit_base": str(self.total_debit_base),
            "total_credit_base": str(self.total_credit_base),
            "is_balanced": self.is_balanced,
        }


def _provisional_ref(event: FinanceEvent) -> str:
    """Reference usable before the event is known to be well formed."""
    metadata = event.metadata
    if metadata.idempotency_key:
        return str(metadata.idempotency_key)[:200]
    if metadata.external_reference:
        return f"{metadata.source_system}:{metadata.external_reference}"[:200]
    return "unvalidated"


class PostingOrchestrator:
    """Central factory for kernel services and the posting pipeline.

    Contract:
        Receives a SQLAlchemy Session, a ConfigurationSnapshot and an
        optional Clock / RetryPolicy.  Constructs every kernel service
        exactly once and exposes them as public attributes.

    Guarantees:
        - All services share the same Session and Clock.
        - Identical events against identical configuration produce
          identical journals.

    Non-goals:
        - Does NOT manage the outer transaction (no commit).  Savepoints it
          opens are its own business.
    """

    def __init__(
        self,
        session: Session,
        config: ConfigurationSnapshot,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self.config = config
        settings = config.settings

        # Order matters (dependency graph)
        self.auditor = AuditorService(session, self._clock)
        self.period_service = PeriodService(
            session, self._clock, self.auditor, settings.future_grace_days
        )
        self.journal_writer = JournalWriter(session, self._clock)
        self.validator = EventValidator(settings.max_amount, settings.text_max_length)
        self.resolver = config.resolver()
        self.builder = JournalBuilder(self.resolver, settings.max_rounding_absorption)
        self.retry_policy = retry_policy or settings.retry.to_policy()
        self.ledger = LedgerSelector(session)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_event(self, event: FinanceEvent, actor_id: UUID, dry_run: bool = False) -> PostingResult:
        """Run *event* through the pipeline.  Never raises for business failures."""
        event_ref = _provisional_ref(event)
        with LogContext.bind(
            organization_id=getattr(event, "organization_id", None),
            event_ref=event_ref,
            actor_id=actor_id,
        ):
            t0 = time.monotonic()
            logger.info(
                "posting_started",
                extra={"smart_code": str(event.smart_code), "dry_run": dry_run},
            )
            try:
                event = self.validator.validate_or_raise(event)
                event_ref = event.idempotency_key
                profile = self._profile_for(event)
                result = self.retry_policy.call(
                    lambda: self._run_in_savepoint(event, profile, actor_id, dry_run),
                    operation="post_event",
                )
            except MdaError as exc:
                return self._reject(event, event_ref, actor_id, exc, dry_run)

            logger.info(
                "posting_completed",
                extra={
                    "status": result.status.value,
                    "journal_number": result.journal_number,
                    "line_count": len(result.lines),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return result

    def _profile_for(self, event: FinanceEvent) -> OrganizationProfile:
        profile = self.config.profile_for(event.organization_id)
        if event.base_currency != profile.base_currency:
            raise EventValidationError(
                [
                    SchemaViolation(
                        "base_currency",
                        f"must be the organization's base currency {profile.base_currency}",
                    )
                ]
            )
        return profile

    def _run_in_savepoint(
        self,
        event: FinanceEvent,
        profile: OrganizationProfile,
        actor_id: UUID,
        dry_run: bool,
    ) -> PostingResult:
        savepoint = self._session.begin_nested()
        try:
            result = self._run_pipeline(event, profile, actor_id, dry_run)
        except Exception:
            savepoint.rollback()
            raise
        if dry_run:
            savepoint.rollback()
        else:
            savepoint.commit()
        return result

    def _run_pipeline(
        self,
        event: FinanceEvent,
        profile: OrganizationProfile,
        actor_id: UUID,
        dry_run: bool,
    ) -> PostingResult:
        event_ref = event.idempotency_key

        existing = self.journal_writer.find_by_idempotency_key(event.organization_id, event_ref)
        if existing is not None:
            if existing.payload_hash != event.fingerprint():
                raise IdempotencyConflictError(event_ref, str(existing.id))
            logger.info("duplicate_posting_suppressed", extra={"transaction_id": str(existing.id)})
            if not dry_run:
                self.auditor.record_duplicate(event_ref, event.organization_id, existing.id, actor_id)
            return PostingResult(
                status=PostingStatus.ALREADY_POSTED,
                event_ref=event_ref,
                transaction=PostedTransactionInfo.from_model(existing),
            )

        period = self.period_service.ensure_postable(
            event.organization_id,
            event.transaction_date,
            fiscal_year_start_month=profile.fiscal_year_start_month,
            actor_id=actor_id,
        )
        rule = self.resolver.resolve(event.organization_id, event.code)
        tax_split = self._split_tax(event, rule, profile)
        draft = self.builder.build(event, period.period_code, rule, tax_split)
        if draft.rounding_adjustment:
            logger.info(
                "rounding_remainder_absorbed",
                extra={"adjustment": str(draft.rounding_adjustment)},
            )

        if dry_run:
            return PostingResult(status=PostingStatus.DRY_RUN, event_ref=event_ref, draft=draft)

        txn, created = self.journal_writer.persist(
            draft, event, period, actor_id, self.config.version_label
        )
        if created:
            self.auditor.record_posting(
                txn.id,
                event.organization_id,
                event.smart_code,
                str(event.total_amount),
                event.transaction_currency,
                period.period_code,
                actor_id,
            )
            status = PostingStatus.POSTED
        else:
            self.auditor.record_duplicate(event_ref, event.organization_id, txn.id, actor_id)
            status = PostingStatus.ALREADY_POSTED

        return PostingResult(
            status=status,
            event_ref=event_ref,
            transaction=PostedTransactionInfo.from_model(txn),
        )

    def _split_tax(self, event: FinanceEvent, rule: PostingRule, profile: OrganizationProfile) -> TaxSplit:
        context = event.context
        places = CurrencyRegistry.posting_places(event.transaction_currency)
        declared = context.declared_tax if context is not None else None
        if declared is not None:
            try:
                return VatCalculator.declared(event.total_amount, declared, places)
            except ValueError as exc:
                raise EventValidationError([SchemaViolation("context.vat_collected", str(exc))]) from None

        rate = self.config.tax_table.rate_for(profile.jurisdiction, rule.vat_category)
        inclusive = context.tax_inclusive if context is not None else True
        return VatCalculator.split(event.total_amount, rate, inclusive, places)

    def _reject(
        self,
        event: FinanceEvent,
        event_ref: str,
        actor_id: UUID,
        exc: MdaError,
        dry_run: bool,
    ) -> PostingResult:
        organization_id = event.organization_id if isinstance(event.organization_id, UUID) else None
        logger.warning(
            "posting_rejected",
            extra={"error_code": exc.code, "error_category": exc.category, "dry_run": dry_run},
        )

        if not dry_run:
            self._audit_rejection(
                event,
                event_ref,
                organization_id,
                actor_id,
                exc.category,
                exc.code,
                exc.message,
                tuple(getattr(exc, "violations", ())),
            )
        return PostingResult.rejected(event_ref, exc)

    def audit_rejected_result(self, event: FinanceEvent, result: PostingResult, actor_id: UUID) -> None:
        """Record *result*'s rejection again.

        For callers that ran ``post_event`` inside their own savepoint and
        rolled it back, taking the original audit row with it.
        """
        organization_id = event.organization_id if isinstance(event.organization_id, UUID) else None
        self._audit_rejection(
            event,
            result.event_ref,
            organization_id,
            actor_id,
            result.error_category or "",
            result.error_code or "",
            result.error_message or "",
            result.violations,
        )

    def _audit_rejection(
        self,
        event: FinanceEvent,
        event_ref: str,
        organization_id: UUID | None,
        actor_id: UUID,
        category: str,
        error_code: str,
        error_message: str,
        violations: tuple[SchemaViolation, ...],
    ) -> None:
        if category == "transient":
            # Storage is unavailable; an audit write would fail the same way
            logger.error("posting_failed_transient", extra={"error_code": error_code})
        elif category == "invariant":
            self.auditor.record_invariant_violation(
                "FinanceEvent",
                event_ref,
                organization_id,
                actor_id,
                error_code,
                {
                    "smart_code": str(event.smart_code),
                    "amount": str(event.total_amount),
                    "error_message": error_message,
                },
            )
        else:
            self.auditor.record_rejection(
                event_ref,
                organization_id,
                str(event.smart_code)[:100],
                str(event.total_amount),
                actor_id,
                error_code,
                error_message,
                field=violations[0].field if violations else None,
            )

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    def check_period(self, organization_id: UUID, transaction_date: date) -> PeriodCheck:
        """May *organization_id* post on *transaction_date*?  Creates the period lazily."""
        profile = self.config.profile_for(organization_id)
        with LogContext.bind(organization_id=organization_id):
            return self.retry_policy.call(
                lambda: self.period_service.validate_for_posting(
                    organization_id,
                    transaction_date,
                    fiscal_year_start_month=profile.fiscal_year_start_month,
                    actor_id=SYSTEM_ACTOR_ID,
                ),
                operation="check_period",
            )

    def close_period(self, organization_id: UUID, period_code: str, actor_id: UUID) -> PeriodCloseResult:
        with LogContext.bind(organization_id=organization_id, actor_id=actor_id):
            try:
                period = self.retry_policy.call(
                    lambda: self.period_service.close_period(organization_id, period_code, actor_id),
                    operation="close_period",
                )
            except MdaError as exc:
                logger.warning("period_close_rejected", extra={"error_code": exc.code, "period_code": period_code})
                return PeriodCloseResult(success=False, error_code=exc.code, error_message=exc.message)
            return PeriodCloseResult(success=True, period=period)

    def reopen_period(
        self, organization_id: UUID, period_code: str, actor_id: UUID, reason: str
    ) -> PeriodCloseResult:
        with LogContext.bind(organization_id=organization_id, actor_id=actor_id):
            try:
                period = self.retry_policy.call(
                    lambda: self.period_service.reopen_period(organization_id, period_code, actor_id, reason),
                    operation="reopen_period",
                )
            except MdaError as exc:
                logger.warning("period_reopen_rejected", extra={"error_code": exc.code, "period_code": period_code})
                return PeriodCloseResult(success=False, error_code=exc.code, error_message=exc.message)
            return PeriodCloseResult(success=True, period=period)

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    def reverse_transaction(
        self,
        organization_id: UUID,
        transaction_id: UUID,
        actor_id: UUID,
        reversal_date: date | None = None,
    ) -> PostingResult:
        """
        Post the mirror image of a posted transaction.

        The original stays untouched; the reversal points back to it through
        ``reverses_transaction_id``, which is unique, so a transaction is
        reversed at most once.
        """
        reversal_date = reversal_date or self._clock.today()
        event_ref = f"reversal:{transaction_id}"
        with LogContext.bind(organization_id=organization_id, event_ref=event_ref, actor_id=actor_id):
            try:
                result = self.retry_policy.call(
                    lambda: self._reverse_in_savepoint(organization_id, transaction_id, actor_id, reversal_date),
                    operation="reverse_transaction",
                )
            except MdaError as exc:
                logger.warning("reversal_rejected", extra={"error_code": exc.code})
                if exc.category != "transient":
                    self.auditor.record_rejection(
                        event_ref, organization_id, "", "", actor_id, exc.code, exc.message
                    )
                return PostingResult.rejected(event_ref, exc)

            logger.info("reversal_posted", extra={"journal_number": result.journal_number})
            return result

    def _reverse_in_savepoint(
        self,
        organization_id: UUID,
        transaction_id: UUID,
        actor_id: UUID,
        reversal_date: date,
    ) -> PostingResult:
        savepoint = self._session.begin_nested()
        try:
            original = self.journal_writer.get(organization_id, transaction_id)
            if original is None:
                raise TransactionNotFoundError(str(transaction_id))
            existing = self.journal_writer.find_reversal(original.id)
            if existing is not None:
                raise AlreadyReversedError(str(original.id), str(existing.id))

            profile = self.config.profile_for(organization_id)
            period = self.period_service.ensure_postable(
                organization_id,
                reversal_date,
                fiscal_year_start_month=profile.fiscal_year_start_month,
                actor_id=actor_id,
            )
            event = JournalWriter.reversal_event(original, reversal_date)
            draft = self.builder.build_reversal(
                JournalWriter.load_draft(original),
                reversal_date,
                period.period_code,
                event.idempotency_key,
            )
            txn, _ = self.journal_writer.persist(
                draft,
                event,
                period,
                actor_id,
                self.config.version_label,
                reverses_transaction_id=original.id,
            )
            self.auditor.record_reversal(txn.id, original.id, organization_id, actor_id)
        except Exception:
            savepoint.rollback()
            raise
        savepoint.commit()
        return PostingResult(
            status=PostingStatus.POSTED,
            event_ref=event.idempotency_key,
            transaction=PostedTransactionInfo.from_model(txn),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, organization_id: UUID, transaction_id: UUID) -> PostedTransactionInfo | None:
        txn = self.journal_writer.get(organization_id, transaction_id)
        return PostedTransactionInfo.from_model(txn) if txn else None

    def trial_balance(self, organization_id: UUID, period_code: str | None = None) -> TrialBalance:
        """Totals of posted GL lines per account; all periods when *period_code* is None."""
        profile = self.config.profile_for(organization_id)
        rows = self.ledger.trial_balance(organization_id, period_code)
        logger.info(
            "trial_balance_computed",
            extra={"organization_id": str(organization_id), "period_code": period_code, "row_count": len(rows)},
        )
        return TrialBalance(
            organization_id=organization_id,
            period_code=period_code,
            base_currency=profile.base_currency,
            rows=tuple(rows),
        )
