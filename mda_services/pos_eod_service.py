"""
PosEodService -- posts a point-of-sale end-of-day summary.

Responsibility:
    Reconciles a daily summary, derives its finance events (sales,
    per-staff commission accruals, cash over/short) and runs each one
    through the ordinary posting pipeline.

Architecture position:
    Services -- an alternate entry point built on PostingOrchestrator.  It
    never writes journals itself.

Invariants enforced:
    - A summary whose payments do not add up to gross sales is rejected
      before any event is derived: no period, journal or line is written.
      The mismatch is logged at CRITICAL and audited as an invariant
      violation.
    - All derived events post inside one outer savepoint.  The first
      failure rolls the whole summary back and is surfaced.  After the
      rollback both the failing event (critical for invariant violations)
      and the summary rejection are audited.
    - Derived events carry deterministic idempotency keys, so reprocessing
      the same summary returns the existing journals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from mda_kernel.domain.pos_summary import (
    CommissionAccrual,
    PosDailySummary,
    PosTotals,
    check_reconciliation,
    check_shape,
    derive_events,
)
from mda_kernel.exceptions import (
    EventValidationError,
    ReconciliationMismatchError,
    SchemaViolation,
)
from mda_kernel.logging_config import LogContext, get_logger
from mda_kernel.services.journal_writer import PostedTransactionInfo
from mda_services.posting_orchestrator import PostingOrchestrator, PostingResult

logger = get_logger("services.pos_eod")


@dataclass(frozen=True)
class PosSummaryResult:
    success: bool
    summary_ref: str
    journal_entries: tuple[PostedTransactionInfo, ...] = ()
    commission_accruals: tuple[CommissionAccrual, ...] = ()
    totals: PosTotals = field(default_factory=PosTotals)
    validation_errors: tuple[SchemaViolation, ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    duplicate: bool = False

    @property
    def transaction_ids(self) -> list[UUID]:
        return [entry.id for entry in self.journal_entries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary_id": self.summary_ref,
            "journal_entries": [entry.to_dict() for entry in self.journal_entries],
            "commission_accruals": [accrual.to_dict() for accrual in self.commission_accruals],
            "totals": self.totals.to_dict(),
            "validation_errors": [v.to_dict() for v in self.validation_errors],
            "error_code": self.error_code,
            "error_message": self.error_message,
            "duplicate": self.duplicate,
        }


class PosEodService:
    """
    End-of-day aggregator.

    Contract:
        ``process_daily_summary`` never raises for business failures; the
        result carries ``error_code`` and ``validation_errors`` instead.
    """

    def __init__(self, orchestrator: PostingOrchestrator):
        self._orchestrator = orchestrator
        self._session = orchestrator.session
        self._auditor = orchestrator.auditor

    def process_daily_summary(self, summary: PosDailySummary, actor_id: UUID) -> PosSummaryResult:
        ref = summary.reference
        with LogContext.bind(organization_id=summary.organization_id, event_ref=ref, actor_id=actor_id):
            logger.info(
                "pos_summary_started",
                extra={"business_date": summary.business_date, "gross_sales": str(summary.gross_sales)},
            )

            violations = check_shape(summary)
            if violations:
                exc = EventValidationError(violations)
                return self._reject(summary, actor_id, exc.code, exc.message, violations)

            mismatch = check_reconciliation(summary)
            if mismatch:
                return self._reject_mismatch(summary, actor_id, mismatch)

            profile = self._orchestrator.config.profile_for(summary.organization_id)
            derived = derive_events(summary, profile.domain, profile.base_currency)

            outer = self._session.begin_nested()
            results: list[PostingResult] = []
            try:
                for event in derived.in_posting_order():
                    result = self._orchestrator.post_event(event, actor_id)
                    if not result.success:
                        outer.rollback()
                        logger.warning(
                            "pos_summary_event_failed",
                            extra={"smart_code": event.smart_code, "error_code": result.error_code},
                        )
                        # The event's own audit row went with the rollback
                        self._orchestrator.audit_rejected_result(event, result, actor_id)
                        return self._reject(
                            summary,
                            actor_id,
                            result.error_code or "",
                            result.error_message or "",
                            list(result.violations),
                            totals=derived.totals,
                        )
                    results.append(result)
            except Exception:
                outer.rollback()
                raise
            outer.commit()

            entries = tuple(r.transaction for r in results if r.transaction is not None)
            duplicate = all(r.duplicate for r in results)
            if not duplicate:
                self._auditor.record_pos_summary(
                    ref,
                    summary.organization_id,
                    actor_id,
                    [str(entry.id) for entry in entries],
                    derived.totals.to_dict(),
                )
            logger.info(
                "pos_summary_posted",
                extra={"journal_count": len(entries), "duplicate": duplicate},
            )
            return PosSummaryResult(
                success=True,
                summary_ref=ref,
                journal_entries=entries,
                commission_accruals=tuple(a for a in summary.commissions if a.amount > 0),
                totals=derived.totals,
                duplicate=duplicate,
            )

    def _reject_mismatch(
        self, summary: PosDailySummary, actor_id: UUID, violations: list[SchemaViolation]
    ) -> PosSummaryResult:
        exc = ReconciliationMismatchError(
            str(summary.payments.total), str(summary.gross_sales), violations
        )
        self._auditor.record_invariant_violation(
            "PosDailySummary",
            summary.reference,
            summary.organization_id,
            actor_id,
            exc.code,
            {"payments_total": exc.payments_total, "gross_sales": exc.gross_sales},
        )
        return PosSummaryResult(
            success=False,
            summary_ref=summary.reference,
            validation_errors=tuple(violations),
            error_code=exc.code,
            error_message=exc.message,
        )

    def _reject(
        self,
        summary: PosDailySummary,
        actor_id: UUID,
        error_code: str,
        error_message: str,
        violations: list[SchemaViolation],
        totals: PosTotals | None = None,
    ) -> PosSummaryResult:
        logger.warning("pos_summary_rejected", extra={"error_code": error_code})
        self._auditor.record_pos_rejection(
            summary.reference,
            summary.organization_id,
            actor_id,
            error_code,
            [v.to_dict() for v in violations],
        )
        return PosSummaryResult(
            success=False,
            summary_ref=summary.reference,
            totals=totals or PosTotals(),
            validation_errors=tuple(violations),
            error_code=error_code,
            error_message=error_message,
        )
