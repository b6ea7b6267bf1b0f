"""
Smart codes -- typed category tags.

Responsibility:
    Parses the dotted category tag ``DOMAIN.MODULE.CATEGORY.SUBCATEGORY.vN``
    into a frozen ``SmartCode`` once, at the boundary, and maps it to an
    ``EventKind`` through an enum-keyed table.  Posting rules are keyed by
    ``SmartCode`` so nothing downstream re-parses strings per call.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

SMART_CODE_PATTERN = re.compile(r"^[A-Z]+\.[A-Z]+\.[A-Z]+\.[A-Z]+\.v\d+$")

# Rule tables may use "*" as DOMAIN for cross-industry defaults
_RULE_KEY_PATTERN = re.compile(r"^(?:[A-Z]+|\*)\.[A-Z]+\.[A-Z]+\.[A-Z]+\.v\d+$")

WILDCARD_DOMAIN = "*"


class EventKind(str, Enum):
    """Business meaning of an event, selecting its typed context variant."""

    EXPENSE = "expense"
    REVENUE = "revenue"
    BANK_FEE = "bank_fee"
    POS_SUMMARY = "pos_summary"
    POS_COMMISSION = "pos_commission"
    POS_CASH_VARIANCE = "pos_cash_variance"


# (MODULE, CATEGORY, SUBCATEGORY or None for any) -> kind
_KIND_TABLE: dict[tuple[str, str, str | None], EventKind] = {
    ("FINANCE", "EXPENSE", None): EventKind.EXPENSE,
    ("FINANCE", "REVENUE", None): EventKind.REVENUE,
    ("FINANCE", "BANK", None): EventKind.BANK_FEE,
    ("POS", "EOD", "SUMMARY"): EventKind.POS_SUMMARY,
    ("POS", "EOD", "COMMISSION"): EventKind.POS_COMMISSION,
    ("POS", "EOD", "OVER"): EventKind.POS_CASH_VARIANCE,
    ("POS", "EOD", "SHORT"): EventKind.POS_CASH_VARIANCE,
}


class InvalidSmartCode(ValueError):
    """Raised when a string does not match the smart code pattern."""


@dataclass(frozen=True, order=True)
class SmartCode:
    """
    Parsed category tag.

    Guarantees:
        - ``str(code)`` reproduces the canonical dotted form.
        - Instances are hashable and usable as rule-table keys.
    """

    domain: str
    module: str
    category: str
    subcategory: str
    version: int

    @classmethod
    def parse(cls, value: str, *, allow_wildcard: bool = False) -> SmartCode:
        pattern = _RULE_KEY_PATTERN if allow_wildcard else SMART_CODE_PATTERN
        if not isinstance(value, str) or not pattern.match(value):
            raise InvalidSmartCode(
                f"Smart code {value!r} does not match DOMAIN.MODULE.CATEGORY.SUBCATEGORY.vN"
            )
        domain, module, category, subcategory, version = value.split(".")
        return cls(domain, module, category, subcategory, int(version[1:]))

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return isinstance(value, str) and bool(SMART_CODE_PATTERN.match(value))

    def with_domain(self, domain: str) -> SmartCode:
        return SmartCode(domain, self.module, self.category, self.subcategory, self.version)

    def as_domain_default(self) -> SmartCode:
        """The cross-industry key this code falls back to."""
        return self.with_domain(WILDCARD_DOMAIN)

    @property
    def kind(self) -> EventKind | None:
        return (
            _KIND_TABLE.get((self.module, self.category, self.subcategory))
            or _KIND_TABLE.get((self.module, self.category, None))
        )

    def __str__(self) -> str:
        return f"{self.domain}.{self.module}.{self.category}.{self.subcategory}.v{self.version}"


def smart_code_for(domain: str, module: str, category: str, subcategory: str, version: int = 1) -> str:
    """Compose a canonical smart code string."""
    return str(SmartCode(domain, module, category, subcategory, version))
