"""
POS summary -- reconciliation and event derivation for a day's takings.

Responsibility:
    Checks that a point-of-sale daily summary is internally consistent and
    derives the ordinary finance events that post it: one sales event, one
    commission accrual per staff member, and (when the counted drawer
    differs from the expected cash) one cash over/short event.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  mda_services.pos_eod_service runs
    the derived events through the normal pipeline.

Invariants enforced:
    - cash + card + other == gross_sales within 0.01, or the summary is
      rejected before any event is derived.
    - Derived events carry deterministic idempotency keys built from the
      organization, business date and staff id, so reprocessing the same
      day never double-posts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.events import (
    CashVarianceContext,
    Channel,
    CommissionContext,
    FinanceEvent,
    IngestionMetadata,
    PosSummaryContext,
)
from mda_kernel.domain.smart_code import smart_code_for
from mda_kernel.exceptions import SchemaViolation
from mda_kernel.utils.rounding import BALANCE_TOLERANCE, decimal_places_of

ZERO = Decimal("0")
POS_SOURCE_SYSTEM = "pos"


@dataclass(frozen=True)
class PaymentBreakdown:
    cash: Decimal = ZERO
    card: Decimal = ZERO
    other: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.cash + self.card + self.other


@dataclass(frozen=True)
class CommissionAccrual:
    staff_id: str
    amount: Decimal
    staff_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"staff_id": self.staff_id, "staff_name": self.staff_name, "amount": str(self.amount)}


@dataclass(frozen=True)
class PosDailySummary:
    organization_id: UUID
    business_date: date
    currency: str
    gross_sales: Decimal
    vat_collected: Decimal
    payments: PaymentBreakdown
    commissions: tuple[CommissionAccrual, ...] = ()
    # Physically counted drawer; None skips the over/short check
    cash_counted: Decimal | None = None
    summary_ref: str | None = None
    # Summary currency to base currency; 1 when they match
    exchange_rate: Decimal = Decimal("1")

    @property
    def reference(self) -> str:
        return self.summary_ref or f"{self.organization_id}:{self.business_date.isoformat()}"

    @property
    def cash_variance(self) -> Decimal:
        if self.cash_counted is None:
            return ZERO
        return self.cash_counted - self.payments.cash


@dataclass(frozen=True)
class PosTotals:
    gross_sales: Decimal = ZERO
    total_vat: Decimal = ZERO
    total_commission: Decimal = ZERO
    cash_variance: Decimal = ZERO

    def to_dict(self) -> dict[str, str]:
        return {
            "gross_sales": str(self.gross_sales),
            "total_vat": str(self.total_vat),
            "total_commission": str(self.total_commission),
            "cash_variance": str(self.cash_variance),
        }


@dataclass(frozen=True)
class DerivedPosEvents:
    sales: FinanceEvent
    commissions: tuple[FinanceEvent, ...] = ()
    cash_variance: FinanceEvent | None = None
    totals: PosTotals = field(default_factory=PosTotals)

    def in_posting_order(self) -> list[FinanceEvent]:
        events = [self.sales, *self.commissions]
        if self.cash_variance is not None:
            events.append(self.cash_variance)
        return events


def _money_violations(
    name: str, value: Decimal, *, allow_zero: bool = True, places: int = 2
) -> list[SchemaViolation]:
    if not isinstance(value, Decimal) or not value.is_finite():
        return [SchemaViolation(name, "must be a finite decimal number")]
    if value < 0 or (value == 0 and not allow_zero):
        return [SchemaViolation(name, "must be positive" if not allow_zero else "must not be negative")]
    if decimal_places_of(value) > places:
        return [SchemaViolation(name, f"at most {places} decimal places")]
    return []


def check_shape(summary: PosDailySummary) -> list[SchemaViolation]:
    """Field-level checks that do not involve the reconciliation equation."""
    violations: list[SchemaViolation] = []
    places = CurrencyRegistry.posting_places(summary.currency)
    violations += _money_violations("gross_sales", summary.gross_sales, allow_zero=False, places=places)
    violations += _money_violations("vat_collected", summary.vat_collected, places=places)
    violations += _money_violations("payments.cash", summary.payments.cash, places=places)
    violations += _money_violations("payments.card", summary.payments.card, places=places)
    violations += _money_violations("payments.other", summary.payments.other, places=places)
    if summary.cash_counted is not None:
        violations += _money_violations("cash_counted", summary.cash_counted, places=places)
    if not violations and summary.vat_collected > summary.gross_sales:
        violations.append(SchemaViolation("vat_collected", "must not exceed gross_sales"))

    seen: set[str] = set()
    for index, accrual in enumerate(summary.commissions):
        if not accrual.staff_id:
            violations.append(SchemaViolation(f"commissions[{index}].staff_id", "required"))
        elif accrual.staff_id in seen:
            violations.append(SchemaViolation(f"commissions[{index}].staff_id", "duplicate staff member"))
        seen.add(accrual.staff_id)
        violations += _money_violations(f"commissions[{index}].amount", accrual.amount, places=places)
    return violations


def check_reconciliation(summary: PosDailySummary) -> list[SchemaViolation]:
    """The payment methods must add up to gross sales."""
    diff = summary.payments.total - summary.gross_sales
    if abs(diff) < BALANCE_TOLERANCE:
        return []
    return [
        SchemaViolation(
            "payments",
            f"payment total {summary.payments.total} does not match gross sales "
            f"{summary.gross_sales} (difference {diff})",
        )
    ]


def derive_events(
    summary: PosDailySummary,
    domain: str,
    base_currency: str,
) -> DerivedPosEvents:
    """
    Derive the finance events that post *summary*.

    Preconditions:
        check_shape and check_reconciliation both returned no violations.
    """
    day = summary.business_date
    key_prefix = f"pos-eod:{summary.organization_id}:{day.isoformat()}"

    def event(smart_code: str, amount: Decimal, context: Any, key: str) -> FinanceEvent:
        return FinanceEvent(
            organization_id=summary.organization_id,
            smart_code=smart_code,
            transaction_date=day,
            total_amount=amount,
            transaction_currency=summary.currency,
            base_currency=base_currency,
            exchange_rate=summary.exchange_rate,
            context=context,
            metadata=IngestionMetadata(
                source_system=POS_SOURCE_SYSTEM,
                external_reference=summary.summary_ref,
                idempotency_key=f"{key_prefix}:{key}",
            ),
        )

    sales = event(
        smart_code_for(domain, "POS", "EOD", "SUMMARY"),
        summary.gross_sales,
        PosSummaryContext(
            channel=Channel.POS,
            business_date=day,
            cash=summary.payments.cash,
            card=summary.payments.card,
            other=summary.payments.other,
            vat_collected=summary.vat_collected,
            note=f"POS daily sales {day.isoformat()}",
        ),
        "sales",
    )

    commissions = tuple(
        event(
            smart_code_for(domain, "POS", "EOD", "COMMISSION"),
            accrual.amount,
            CommissionContext(
                channel=Channel.POS,
                staff_id=accrual.staff_id,
                staff_name=accrual.staff_name,
                business_date=day,
                note=f"Commission accrual {accrual.staff_name or accrual.staff_id}",
            ),
            f"commission:{accrual.staff_id}",
        )
        for accrual in summary.commissions
        if accrual.amount > 0
    )

    variance = summary.cash_variance
    variance_event = None
    if variance != 0:
        direction = "OVER" if variance > 0 else "SHORT"
        variance_event = event(
            smart_code_for(domain, "POS", "EOD", direction),
            abs(variance),
            CashVarianceContext(
                channel=Channel.POS,
                business_date=day,
                expected_cash=summary.payments.cash,
                counted_cash=summary.cash_counted,
                note=f"Cash {direction.lower()} {day.isoformat()}",
            ),
            "cash-variance",
        )

    totals = PosTotals(
        gross_sales=summary.gross_sales,
        total_vat=summary.vat_collected,
        total_commission=sum((e.total_amount for e in commissions), ZERO),
        cash_variance=variance,
    )
    return DerivedPosEvents(
        sales=sales,
        commissions=commissions,
        cash_variance=variance_event,
        totals=totals,
    )
