"""
Tax -- VAT splitting and per-jurisdiction rate tables.

Responsibility:
    Splits a tax-inclusive or tax-exclusive amount into net and tax parts,
    and looks up the rate for a tax category in a jurisdiction's table.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Inclusive:  net = round(G / (1 + r), 2), tax = G - net, gross = G.
    - Exclusive:  net = G, tax = round(G * r, 2), gross = net + tax.
    - net + tax == gross exactly, so any remaining imbalance in a journal
      comes from template ratios, never from the split itself.
    - Rates come from the table; no call site hard-codes a rate.

Failure modes:
    - TaxRateNotFoundError for an unknown jurisdiction or tax category.
    - ValueError for a negative rate or amount.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType

from mda_kernel.exceptions import TaxRateNotFoundError
from mda_kernel.utils.rounding import round_money

STANDARD_CATEGORY = "standard"


@dataclass(frozen=True)
class TaxSplit:
    """Result of splitting an amount into net and tax."""

    net: Decimal
    tax: Decimal
    gross: Decimal
    rate: Decimal
    inclusive: bool

    def to_dict(self) -> dict[str, str | bool]:
        return {
            "net": str(self.net),
            "tax": str(self.tax),
            "gross": str(self.gross),
            "rate": str(self.rate),
            "inclusive": self.inclusive,
        }


class VatCalculator:
    """Stateless VAT arithmetic."""

    @staticmethod
    def split(amount: Decimal, rate: Decimal, inclusive: bool, decimal_places: int = 2) -> TaxSplit:
        if amount < 0:
            raise ValueError(f"Amount must not be negative: {amount}")
        if rate < 0:
            raise ValueError(f"Rate must not be negative: {rate}")

        amount = round_money(amount, decimal_places)
        if inclusive:
            net = round_money(amount / (Decimal("1") + rate), decimal_places)
            tax = amount - net
            return TaxSplit(net=net, tax=tax, gross=amount, rate=rate, inclusive=True)

        tax = round_money(amount * rate, decimal_places)
        return TaxSplit(net=amount, tax=tax, gross=amount + tax, rate=rate, inclusive=False)

    @staticmethod
    def declared(gross: Decimal, tax: Decimal, decimal_places: int = 2) -> TaxSplit:
        """
        Split using a tax amount already fixed by the source document.

        Used for POS summaries, where the till has already computed VAT per
        ticket and recomputing it from the daily total would drift.
        """
        gross = round_money(gross, decimal_places)
        tax = round_money(tax, decimal_places)
        if tax < 0 or tax > gross:
            raise ValueError(f"Declared tax {tax} must be between 0 and gross {gross}")
        net = gross - tax
        rate = round_money(tax / net, 6) if net else Decimal("0")
        return TaxSplit(net=net, tax=tax, gross=gross, rate=rate, inclusive=True)


@dataclass(frozen=True)
class JurisdictionTaxTable:
    """
    Rates for one jurisdiction.

    ``category_rates`` holds reduced, zero and exempt rates by category
    name; ``standard`` always resolves to ``standard_rate``.
    """

    jurisdiction: str
    standard_rate: Decimal
    category_rates: Mapping[str, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "category_rates", MappingProxyType(dict(self.category_rates)))

    def rate_for(self, category: str) -> Decimal:
        if category == STANDARD_CATEGORY:
            return self.standard_rate
        try:
            return self.category_rates[category]
        except KeyError:
            raise TaxRateNotFoundError(self.jurisdiction, category) from None

    def categories(self) -> frozenset[str]:
        return frozenset(self.category_rates) | {STANDARD_CATEGORY}


class TaxRateTable:
    """All jurisdictions known to a configuration snapshot."""

    def __init__(self, tables: Mapping[str, JurisdictionTaxTable]):
        self._tables = MappingProxyType(dict(tables))

    def rate_for(self, jurisdiction: str, category: str) -> Decimal:
        table = self._tables.get(jurisdiction)
        if table is None:
            raise TaxRateNotFoundError(jurisdiction, category)
        return table.rate_for(category)

    def jurisdictions(self) -> frozenset[str]:
        return frozenset(self._tables)

    def __contains__(self, jurisdiction: object) -> bool:
        return jurisdiction in self._tables
