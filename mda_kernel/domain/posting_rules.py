"""
Posting rules -- category tag to ordered GL role templates.

Responsibility:
    Holds the typed rule model (``PostingRule`` made of ``RoleTemplate``
    entries) and ``PostingRuleResolver``, which picks the rule for an
    (organization, smart code) pair and maps account roles to concrete
    chart-of-accounts entries.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Rule tables are built once per
    configuration load (see mda_config) and handed in as a ``RuleBook``.

Resolution order:
    1. Organization override for the exact smart code.
    2. Shared default for the exact smart code.
    3. Domain-wildcard default (``*.MODULE.CATEGORY.SUBCATEGORY.vN``).
    Nothing found -> MissingPostingConfigurationError.  No guessing.

Account roles resolve the same way: organization chart first, then the
shared chart, else MissingAccountMappingError.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from uuid import UUID

from mda_kernel.domain.smart_code import EventKind, SmartCode
from mda_kernel.exceptions import (
    MissingAccountMappingError,
    MissingPostingConfigurationError,
)

# Placeholder role replaced by the context's payment method (cash, bank, card)
SETTLEMENT_ROLE = "SETTLEMENT"


class Side(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"

    def opposite(self) -> Side:
        return Side.CREDIT if self is Side.DEBIT else Side.DEBIT


class AmountBasis(str, Enum):
    """What a template line's amount is derived from."""

    GROSS = "gross"
    NET = "net"
    TAX = "tax"
    FIXED = "fixed"
    # POS payment components
    CASH = "cash"
    CARD = "card"
    OTHER = "other"


@dataclass(frozen=True)
class RoleTemplate:
    """
    One line of a posting rule.

    ``amount = basis_amount * ratio`` for proportional bases, or the
    template's own ``amount`` when ``basis`` is FIXED.
    """

    role: str
    side: Side
    basis: AmountBasis = AmountBasis.GROSS
    ratio: Decimal = Decimal("1")
    amount: Decimal | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if self.ratio <= 0:
            raise ValueError(f"Template ratio must be positive: {self.role} {self.ratio}")
        if self.basis is AmountBasis.FIXED and (self.amount is None or self.amount <= 0):
            raise ValueError(f"Fixed template {self.role} needs a positive amount")


@dataclass(frozen=True)
class PostingRule:
    smart_code: SmartCode
    kind: EventKind
    lines: tuple[RoleTemplate, ...]
    vat_category: str = "standard"
    description: str = ""

    def __post_init__(self) -> None:
        if not self.lines:
            raise ValueError(f"Posting rule {self.smart_code} has no lines")

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(t.role for t in self.lines)


@dataclass(frozen=True)
class AccountRef:
    """A chart-of-accounts entry as seen by the posting path."""

    code: str
    name: str


@dataclass(frozen=True)
class RuleBook:
    """Immutable rule and account tables for one configuration snapshot."""

    default_rules: Mapping[SmartCode, PostingRule]
    accounts: Mapping[str, AccountRef]
    organization_rules: Mapping[UUID, Mapping[SmartCode, PostingRule]] = field(default_factory=dict)
    organization_accounts: Mapping[UUID, Mapping[str, AccountRef]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("default_rules", "accounts", "organization_rules", "organization_accounts"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))


class PostingRuleResolver:
    """
    Picks posting rules and account codes for an organization.

    Guarantees:
        Identical (organization, smart code) inputs yield the identical
        ``PostingRule`` object for the lifetime of the RuleBook.
    """

    def __init__(self, rule_book: RuleBook):
        self._book = rule_book

    def resolve(self, organization_id: UUID, smart_code: SmartCode | str) -> PostingRule:
        code = smart_code if isinstance(smart_code, SmartCode) else SmartCode.parse(smart_code)

        overrides = self._book.organization_rules.get(organization_id, {})
        rule = (
            overrides.get(code)
            or self._book.default_rules.get(code)
            or self._book.default_rules.get(code.as_domain_default())
        )
        if rule is None:
            raise MissingPostingConfigurationError(str(organization_id), str(code))
        return rule

    def has_rule(self, organization_id: UUID, smart_code: SmartCode | str) -> bool:
        try:
            self.resolve(organization_id, smart_code)
        except MissingPostingConfigurationError:
            return False
        return True

    def resolve_account(self, organization_id: UUID, role: str) -> AccountRef:
        account = self._book.organization_accounts.get(organization_id, {}).get(role)
        if account is None:
            account = self._book.accounts.get(role)
        if account is None:
            raise MissingAccountMappingError(str(organization_id), role)
        return account
