"""
NaturalLanguageService -- free-text instructions into posted journals.

Responsibility:
    Parses an operator's sentence with ``NaturalLanguageParser``, turns the
    draft into a ``FinanceEvent`` for the organization, and submits it to
    the ordinary pipeline.  With ``dry_run`` it returns the parsed draft and
    the journal it would produce, and persists nothing.

Architecture position:
    Services -- an alternate entry point built on PostingOrchestrator.  The
    parser output is untrusted: it goes through the same validator, rule
    resolver and period gate as any API event.

Failure modes:
    - CouldNotClassify when no category keyword matched (with suggestions).
    - SchemaViolation when the sentence carries no amount, names a foreign
      currency without a rate, or asks for a POS end-of-day close.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from mda_kernel.domain.events import (
    BankFeeContext,
    BusinessContext,
    Channel,
    ExpenseContext,
    FinanceEvent,
    IngestionMetadata,
    PaymentMethod,
    RevenueContext,
)
from mda_kernel.domain.nl_parser import NaturalLanguageParser, ParsedDraft, ParseResult
from mda_kernel.exceptions import (
    CouldNotClassifyError,
    EventValidationError,
    MdaError,
    SchemaViolation,
)
from mda_kernel.logging_config import LogContext, get_logger
from mda_kernel.utils.hashing import hash_payload
from mda_services.posting_orchestrator import PostingOrchestrator, PostingResult

logger = get_logger("services.natural_language")

NL_SOURCE_SYSTEM = "natural_language"


@dataclass(frozen=True)
class NlResult:
    success: bool
    text: str
    dry_run: bool = False
    parsed: ParsedDraft | None = None
    posting: PostingResult | None = None
    suggestions: tuple[str, ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    violations: tuple[SchemaViolation, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "parsed": self.parsed.to_dict() if self.parsed else None,
            "posting": self.posting.to_dict() if self.posting else None,
            "suggestions": list(self.suggestions),
            "error": (
                {
                    "code": self.error_code,
                    "message": self.error_message,
                    "violations": [v.to_dict() for v in self.violations],
                }
                if self.error_code
                else None
            ),
        }


class NaturalLanguageService:
    """Parses and submits free-text instructions for one organization at a time."""

    def __init__(self, orchestrator: PostingOrchestrator):
        self._orchestrator = orchestrator
        self._auditor = orchestrator.auditor

    def parse(self, organization_id: UUID, text: str) -> ParseResult:
        profile = self._orchestrator.config.profile_for(organization_id)
        parser = NaturalLanguageParser(
            self._orchestrator.clock,
            domain=profile.domain,
            default_currency=profile.base_currency,
        )
        return parser.parse(text)

    def submit(
        self,
        organization_id: UUID,
        description: str,
        actor_id: UUID,
        dry_run: bool = False,
        idempotency_key: str | None = None,
    ) -> NlResult:
        text_ref = f"nl:{hash_payload({'org': str(organization_id), 'text': description})[:32]}"
        with LogContext.bind(organization_id=organization_id, event_ref=text_ref, actor_id=actor_id):
            parsed = self.parse(organization_id, description)
            logger.info(
                "nl_parsed",
                extra={"classified": parsed.classified, "matched_rules": list(parsed.matched_rules)},
            )

            try:
                draft = self._require_draft(parsed, description)
                event = self._to_event(organization_id, draft, idempotency_key)
            except MdaError as exc:
                return self._reject(organization_id, description, text_ref, actor_id, parsed, exc, dry_run)

            posting = self._orchestrator.post_event(event, actor_id, dry_run=dry_run)
            return NlResult(
                success=posting.success,
                text=description,
                dry_run=dry_run,
                parsed=draft,
                posting=posting,
                error_code=posting.error_code,
                error_message=posting.error_message,
                violations=posting.violations,
            )

    @staticmethod
    def _require_draft(parsed: ParseResult, description: str) -> ParsedDraft:
        if not parsed.classified:
            raise CouldNotClassifyError(description, list(parsed.suggestions))
        if parsed.draft is None:
            raise EventValidationError(
                [SchemaViolation(p.split(":", 1)[0], p.split(":", 1)[-1].strip()) for p in parsed.problems]
            )
        if parsed.draft.operation == "pos_eod":
            raise EventValidationError(
                [
                    SchemaViolation(
                        "operation",
                        "POS end-of-day summaries need a payment breakdown; submit them as a summary",
                    )
                ]
            )
        return parsed.draft

    def _to_event(
        self, organization_id: UUID, draft: ParsedDraft, idempotency_key: str | None
    ) -> FinanceEvent:
        profile = self._orchestrator.config.profile_for(organization_id)
        if draft.currency != profile.base_currency:
            raise EventValidationError(
                [
                    SchemaViolation(
                        "currency",
                        f"{draft.currency} differs from base currency {profile.base_currency}; "
                        "an exchange rate is required",
                    )
                ]
            )
        return FinanceEvent(
            organization_id=organization_id,
            smart_code=draft.smart_code,
            transaction_date=draft.transaction_date,
            total_amount=draft.amount,
            transaction_currency=draft.currency,
            base_currency=profile.base_currency,
            context=self._context_for(draft),
            metadata=IngestionMetadata(
                source_system=NL_SOURCE_SYSTEM,
                idempotency_key=idempotency_key,
            ),
        )

    @staticmethod
    def _context_for(draft: ParsedDraft) -> BusinessContext:
        channel = Channel.NATURAL_LANGUAGE
        if draft.operation == "expense":
            return ExpenseContext(
                channel=channel,
                payment_method=draft.payment_method or PaymentMethod.BANK,
                note=draft.description,
            )
        if draft.operation == "revenue":
            return RevenueContext(
                channel=channel,
                payment_method=draft.payment_method or PaymentMethod.CASH,
                note=draft.description,
            )
        return BankFeeContext(channel=channel, note=draft.description)

    def _reject(
        self,
        organization_id: UUID,
        description: str,
        text_ref: str,
        actor_id: UUID,
        parsed: ParseResult,
        exc: MdaError,
        dry_run: bool,
    ) -> NlResult:
        logger.warning("nl_rejected", extra={"error_code": exc.code, "dry_run": dry_run})
        violations = tuple(getattr(exc, "violations", ()))
        if not dry_run:
            self._auditor.record_rejection(
                text_ref,
                organization_id,
                parsed.draft.smart_code if parsed.draft else "",
                str(parsed.draft.amount) if parsed.draft else "",
                actor_id,
                exc.code,
                exc.message,
                field=violations[0].field if violations else None,
            )
        return NlResult(
            success=False,
            text=description,
            dry_run=dry_run,
            parsed=parsed.draft,
            suggestions=tuple(parsed.suggestions),
            error_code=exc.code,
            error_message=exc.message,
            violations=violations,
        )
