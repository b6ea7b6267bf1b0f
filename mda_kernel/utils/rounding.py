"""
Monetary rounding helpers.

round_money() is the only sanctioned rounding function for posted amounts.
Posted amounts carry the currency's minor units, at most two decimal
places, and round half-up.
"""

from decimal import ROUND_HALF_UP, Decimal

MONEY_DECIMAL_PLACES = 2
BALANCE_TOLERANCE = Decimal("0.01")

_CENT = Decimal("0.01")


def round_money(value: Decimal, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Round *value* half-up to *decimal_places*."""
    quantum = _CENT if decimal_places == 2 else Decimal(1).scaleb(-decimal_places)
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def decimal_places_of(value: Decimal) -> int:
    """Number of significant fractional digits, ignoring trailing zeros."""
    exponent = Decimal(value).normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


def is_balanced(total_debit: Decimal, total_credit: Decimal) -> bool:
    """True when |debit - credit| is strictly below the balance tolerance."""
    return abs(total_debit - total_credit) < BALANCE_TOLERANCE
