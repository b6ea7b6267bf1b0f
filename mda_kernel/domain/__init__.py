"""
Pure domain layer.

Data transfer objects and posting logic with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

Time enters only through an injected Clock.  All domain objects are
immutable and deterministic.
"""

from mda_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from mda_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from mda_kernel.domain.event_validator import EventValidator, sanitize_text
from mda_kernel.domain.events import (
    BankFeeContext,
    BusinessContext,
    CashVarianceContext,
    Channel,
    CommissionContext,
    ExpenseContext,
    FinanceEvent,
    IngestionMetadata,
    PaymentMethod,
    PosSummaryContext,
    RevenueContext,
)
from mda_kernel.domain.journal_builder import DraftLine, JournalBuilder, JournalDraft
from mda_kernel.domain.nl_parser import NaturalLanguageParser, ParsedDraft, ParseResult
from mda_kernel.domain.pos_summary import (
    CommissionAccrual,
    DerivedPosEvents,
    PaymentBreakdown,
    PosDailySummary,
    PosTotals,
)
from mda_kernel.domain.posting_rules import (
    AccountRef,
    AmountBasis,
    PostingRule,
    PostingRuleResolver,
    RoleTemplate,
    RuleBook,
    Side,
)
from mda_kernel.domain.smart_code import EventKind, SmartCode, smart_code_for
from mda_kernel.domain.tax import JurisdictionTaxTable, TaxRateTable, TaxSplit, VatCalculator

__all__ = [
    "AccountRef",
    "AmountBasis",
    "BankFeeContext",
    "BusinessContext",
    "CashVarianceContext",
    "Channel",
    "Clock",
    "CommissionAccrual",
    "CommissionContext",
    "CurrencyInfo",
    "CurrencyRegistry",
    "DerivedPosEvents",
    "DeterministicClock",
    "DraftLine",
    "EventKind",
    "EventValidator",
    "ExpenseContext",
    "FinanceEvent",
    "IngestionMetadata",
    "JournalBuilder",
    "JournalDraft",
    "JurisdictionTaxTable",
    "NaturalLanguageParser",
    "ParseResult",
    "ParsedDraft",
    "PaymentBreakdown",
    "PaymentMethod",
    "PosDailySummary",
    "PosSummaryContext",
    "PosTotals",
    "PostingRule",
    "PostingRuleResolver",
    "RevenueContext",
    "RoleTemplate",
    "RuleBook",
    "Side",
    "SmartCode",
    "SystemClock",
    "TaxRateTable",
    "TaxSplit",
    "VatCalculator",
    "smart_code_for",
]
