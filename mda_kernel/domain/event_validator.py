"""
EventValidator -- static and dynamic validation of finance events.

Responsibility:
    Checks a ``FinanceEvent`` against the canonical shape and returns a
    sanitized copy ready for persistence.  Every violation names the
    offending field.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Called first by the orchestrator and
    by every alternate entry point (POS aggregator, natural-language
    service); no caller bypasses it.

Checks:
    organization_id        a UUID
    smart_code             DOMAIN.MODULE.CATEGORY.SUBCATEGORY.vN with a known kind
    transaction_date       a date
    total_amount           positive, finite, at most the currency's posting places
                           (two; none for JPY), below max_amount
    currencies             three-letter ISO 4217 codes
    exchange_rate          positive; exactly 1 when the currencies match
    lines                  empty
    context                the variant matching the smart code kind

Failure modes:
    - EventValidationError from ``validate_or_raise``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import UUID

from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.events import CONTEXT_TYPES, BusinessContext, FinanceEvent
from mda_kernel.domain.smart_code import SMART_CODE_PATTERN, EventKind, SmartCode
from mda_kernel.exceptions import EventValidationError, SchemaViolation
from mda_kernel.utils.rounding import decimal_places_of

DEFAULT_MAX_AMOUNT = Decimal("100000000")
DEFAULT_TEXT_MAX_LENGTH = 500

_MARKUP = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


def sanitize_text(value: str | None, max_length: int = DEFAULT_TEXT_MAX_LENGTH) -> str | None:
    """
    Strip markup and control characters, collapse whitespace, cap length.

    Returns None for None or for text that is empty after cleaning.
    """
    if value is None:
        return None
    text = _MARKUP.sub(" ", str(value))
    text = "".join(
        " " if unicodedata.category(ch) == "Cc" else ch
        for ch in text
    )
    text = _WHITESPACE.sub(" ", text).strip()
    if not text:
        return None
    return text[:max_length].rstrip()


class EventValidator:
    """
    Validates and sanitizes finance events.

    Contract:
        ``validate`` never raises for bad input; it returns the violations.
        ``validate_or_raise`` returns the sanitized event or raises.
    """

    def __init__(
        self,
        max_amount: Decimal = DEFAULT_MAX_AMOUNT,
        text_max_length: int = DEFAULT_TEXT_MAX_LENGTH,
    ):
        self._max_amount = max_amount
        self._text_max_length = text_max_length

    def validate(self, event: FinanceEvent) -> list[SchemaViolation]:
        violations: list[SchemaViolation] = []

        if not isinstance(event.organization_id, UUID) or event.organization_id.int == 0:
            violations.append(SchemaViolation("organization_id", "must be a non-nil UUID"))

        kind = None
        if not isinstance(event.smart_code, str) or not SMART_CODE_PATTERN.match(event.smart_code):
            violations.append(
                SchemaViolation("smart_code", "must match DOMAIN.MODULE.CATEGORY.SUBCATEGORY.vN")
            )
        else:
            kind = SmartCode.parse(event.smart_code).kind
            if kind is None:
                violations.append(SchemaViolation("smart_code", "unknown event category"))

        if not isinstance(event.transaction_date, date):
            violations.append(SchemaViolation("transaction_date", "must be a date"))

        violations.extend(self._check_amount(event.total_amount, event.transaction_currency))

        for name in ("transaction_currency", "base_currency"):
            code = getattr(event, name)
            try:
                CurrencyRegistry.validate(code)
            except ValueError as exc:
                violations.append(SchemaViolation(name, str(exc)))

        violations.extend(self._check_exchange_rate(event))

        if event.lines:
            violations.append(
                SchemaViolation("lines", "must be empty; GL lines are derived by the engine")
            )

        if kind is not None and event.context is not None:
            expected = CONTEXT_TYPES[kind]
            if type(event.context) is not expected:
                violations.append(
                    SchemaViolation(
                        "context",
                        f"expected {expected.__name__} for {kind.value}, "
                        f"got {type(event.context).__name__}",
                    )
                )

        if kind is EventKind.POS_COMMISSION and not getattr(event.context, "staff_id", ""):
            violations.append(SchemaViolation("context.staff_id", "required"))

        if not event.metadata.source_system:
            violations.append(SchemaViolation("metadata.source_system", "required"))

        return violations

    def _check_amount(self, amount: Decimal, currency: str) -> list[SchemaViolation]:
        if not isinstance(amount, Decimal) or not amount.is_finite():
            return [SchemaViolation("total_amount", "must be a finite decimal number")]
        if amount <= 0:
            return [SchemaViolation("total_amount", "must be positive")]
        places = CurrencyRegistry.posting_places(currency)
        if decimal_places_of(amount) > places:
            return [SchemaViolation("total_amount", f"at most {places} decimal places for {currency}")]
        if amount >= self._max_amount:
            return [SchemaViolation("total_amount", f"must be below {self._max_amount}")]
        return []

    def _check_exchange_rate(self, event: FinanceEvent) -> list[SchemaViolation]:
        rate = event.exchange_rate
        if not isinstance(rate, Decimal) or not rate.is_finite() or rate <= 0:
            return [SchemaViolation("exchange_rate", "must be a positive decimal number")]
        if event.transaction_currency == event.base_currency and rate != 1:
            return [SchemaViolation("exchange_rate", "must be 1 when currencies match")]
        return []

    def sanitize(self, event: FinanceEvent) -> FinanceEvent:
        """Return a copy with cleaned free text and a default context if absent."""
        context = event.context
        if context is None:
            context = CONTEXT_TYPES[event.code.kind]()
        context = self._sanitize_context(context)

        metadata = event.metadata
        if metadata.external_reference is not None:
            metadata = replace(
                metadata,
                external_reference=sanitize_text(metadata.external_reference, 200),
            )
        return replace(event, context=context, metadata=metadata)

    def _sanitize_context(self, context: BusinessContext) -> BusinessContext:
        cleaned = {
            name: sanitize_text(getattr(context, name), self._text_max_length)
            for name in context.text_fields
        }
        if "staff_id" in cleaned and cleaned["staff_id"] is None:
            cleaned["staff_id"] = ""
        return replace(context, **cleaned)

    def validate_or_raise(self, event: FinanceEvent) -> FinanceEvent:
        """
        Validate *event* and return its sanitized copy.

        Raises:
            EventValidationError: if any field is invalid.
        """
        violations = self.validate(event)
        if violations:
            raise EventValidationError(violations)
        return self.sanitize(event)
