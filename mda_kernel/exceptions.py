"""
Typed exception hierarchy for the MDA posting engine.

Responsibility:
    Provides the single root exception (``MdaError``) and every
    domain-specific subclass.  Each exception carries a machine-readable
    ``code`` (the string surfaced to callers) and a ``category`` that tells
    the pipeline how to treat it.

Architecture position:
    Kernel > Exceptions -- imported by every layer.  Zero dependencies on
    other engine modules.

Categories:
    input           Malformed event, unknown category tag.  Never retried.
    configuration   Missing posting rule or account mapping.  Never retried;
                    indicates a setup gap rather than caller misuse.
    invariant       Unbalanced journal, reconciliation mismatch.  Logged at
                    CRITICAL and audited immediately.
    transient       Storage or network hiccup.  Retried by RetryPolicy.
    classification  Natural-language text that could not be classified.
    state           Fiscal period or transaction state forbids the action.

Error code table:
    SchemaViolation              EventValidationError
    FuturePeriodRejected         FuturePeriodRejectedError
    PeriodClosed                 PeriodClosedError
    PeriodAlreadyClosed          PeriodAlreadyClosedError
    PeriodNotClosed              PeriodNotClosedError
    PeriodNotFound               PeriodNotFoundError
    MissingPostingConfiguration  MissingPostingConfigurationError
    MissingAccountMapping        MissingAccountMappingError
    UnbalancedJournal            UnbalancedJournalError
    ReconciliationMismatch       ReconciliationMismatchError
    CouldNotClassify             CouldNotClassifyError
    RetryExhausted               RetryExhaustedError
    IdempotencyConflict          IdempotencyConflictError
    TransactionNotFound          TransactionNotFoundError
    AlreadyReversed              AlreadyReversedError
    ImmutabilityViolation        ImmutabilityViolationError
    ConfigurationError           ConfigurationError
    TransientStorageError        TransientStorageError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class MdaError(Exception):
    """Base exception for all engine errors."""

    code: str = "MdaError"
    category: str = "input"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "category": self.category, "message": self.message}


# =============================================================================
# Input errors
# =============================================================================


@dataclass(frozen=True)
class SchemaViolation:
    """One offending field in a rejected event."""

    field: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "reason": self.reason}


class EventValidationError(MdaError):
    """Event failed schema validation."""

    code: str = "SchemaViolation"
    category: str = "input"

    def __init__(self, violations: list[SchemaViolation]):
        self.violations = list(violations)
        fields = ", ".join(v.field for v in self.violations) or "<none>"
        super().__init__(f"Event failed validation on: {fields}")

    @property
    def field(self) -> str | None:
        return self.violations[0].field if self.violations else None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [v.to_dict() for v in self.violations]
        return data


class IdempotencyConflictError(MdaError):
    """Same idempotency key was reused with a different payload."""

    code: str = "IdempotencyConflict"
    category: str = "input"

    def __init__(self, idempotency_key: str, existing_transaction_id: str):
        self.idempotency_key = idempotency_key
        self.existing_transaction_id = existing_transaction_id
        super().__init__(
            f"Idempotency key {idempotency_key} already posted as "
            f"{existing_transaction_id} with a different payload"
        )


# =============================================================================
# Fiscal period errors
# =============================================================================


class FuturePeriodRejectedError(MdaError):
    """Date lies after the latest permitted posting horizon."""

    code: str = "FuturePeriodRejected"
    category: str = "state"

    def __init__(self, transaction_date: str, horizon: str | None, period_code: str):
        self.transaction_date = transaction_date
        self.horizon = horizon
        self.period_code = period_code
        if horizon is None:
            msg = f"Period {period_code} is blocked for future posting ({transaction_date})"
        else:
            msg = f"Date {transaction_date} is after the posting horizon {horizon}"
        super().__init__(msg)


class PeriodClosedError(MdaError):
    """Posting attempted into a closed period."""

    code: str = "PeriodClosed"
    category: str = "state"

    def __init__(self, period_code: str, transaction_date: str):
        self.period_code = period_code
        self.transaction_date = transaction_date
        super().__init__(f"Fiscal period {period_code} is closed (date {transaction_date})")


class PeriodAlreadyClosedError(MdaError):
    """Close requested for a period that is already closed."""

    code: str = "PeriodAlreadyClosed"
    category: str = "state"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(f"Fiscal period {period_code} is already closed")


class PeriodNotFoundError(MdaError):
    """No fiscal period with the requested code exists."""

    code: str = "PeriodNotFound"
    category: str = "state"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(f"Fiscal period not found: {period_code}")


class PeriodNotClosedError(MdaError):
    """Reopen requested for a period that is not closed."""

    code: str = "PeriodNotClosed"
    category: str = "state"

    def __init__(self, period_code: str, status: str):
        self.period_code = period_code
        self.status = status
        super().__init__(f"Fiscal period {period_code} is not closed (status {status})")


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigurationError(MdaError):
    """Configuration set is malformed."""

    code: str = "ConfigurationError"
    category: str = "configuration"


class MissingPostingConfigurationError(MdaError):
    """No organization override and no domain default for a category tag."""

    code: str = "MissingPostingConfiguration"
    category: str = "configuration"

    def __init__(self, organization_id: str, smart_code: str):
        self.organization_id = organization_id
        self.smart_code = smart_code
        super().__init__(
            f"No posting rule for {smart_code} (organization {organization_id})"
        )


class MissingAccountMappingError(MdaError):
    """Posting rule references a role absent from the chart of accounts."""

    code: str = "MissingAccountMapping"
    category: str = "configuration"

    def __init__(self, organization_id: str, role: str):
        self.organization_id = organization_id
        self.role = role
        super().__init__(f"No account mapped to role {role} (organization {organization_id})")


class TaxRateNotFoundError(MdaError):
    """Jurisdiction or tax category is not in the rate table."""

    code: str = "MissingPostingConfiguration"
    category: str = "configuration"

    def __init__(self, jurisdiction: str, category: str):
        self.jurisdiction = jurisdiction
        self.tax_category = category
        super().__init__(f"No tax rate for category {category} in {jurisdiction}")


# =============================================================================
# Invariant violations
# =============================================================================


class UnbalancedJournalError(MdaError):
    """Debits and credits differ beyond tolerance."""

    code: str = "UnbalancedJournal"
    category: str = "invariant"

    def __init__(self, total_debit: str, total_credit: str, currency: str):
        self.total_debit = total_debit
        self.total_credit = total_credit
        self.currency = currency
        super().__init__(
            f"Journal does not balance: debits {total_debit} != credits "
            f"{total_credit} {currency}"
        )


class ReconciliationMismatchError(MdaError):
    """POS payment totals do not equal gross sales."""

    code: str = "ReconciliationMismatch"
    category: str = "invariant"

    def __init__(self, payments_total: str, gross_sales: str, violations: list[SchemaViolation]):
        self.payments_total = payments_total
        self.gross_sales = gross_sales
        self.violations = list(violations)
        super().__init__(
            f"Payment totals {payments_total} do not match gross sales {gross_sales}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [v.to_dict() for v in self.violations]
        return data


class ImmutabilityViolationError(MdaError):
    """Attempt to modify or delete a posted record."""

    code: str = "ImmutabilityViolation"
    category: str = "invariant"


# =============================================================================
# Transaction state errors
# =============================================================================


class TransactionNotFoundError(MdaError):
    code: str = "TransactionNotFound"
    category: str = "state"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Posted transaction not found: {transaction_id}")


class AlreadyReversedError(MdaError):
    code: str = "AlreadyReversed"
    category: str = "state"

    def __init__(self, transaction_id: str, reversal_id: str):
        self.transaction_id = transaction_id
        self.reversal_id = reversal_id
        super().__init__(f"Transaction {transaction_id} already reversed by {reversal_id}")


# =============================================================================
# Classification and infrastructure
# =============================================================================


class CouldNotClassifyError(MdaError):
    """Free text carried no recognizable category keyword."""

    code: str = "CouldNotClassify"
    category: str = "classification"

    def __init__(self, text: str, suggestions: list[str]):
        self.text = text
        self.suggestions = list(suggestions)
        super().__init__(f"Could not classify: {text!r}")


class TransientStorageError(MdaError):
    """Storage was briefly unavailable; safe to retry."""

    code: str = "TransientStorageError"
    category: str = "transient"


class RetryExhaustedError(MdaError):
    """All retries within the deadline failed."""

    code: str = "RetryExhausted"
    category: str = "transient"

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )
