"""
JournalBuilder -- balanced GL lines from a rule, an event and a tax split.

Responsibility:
    Turns a resolved ``PostingRule`` into concrete, balanced ``DraftLine``
    entries in both the transaction currency and the base currency.  Also
    builds the mirror-image draft used to reverse a posted transaction.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Persistence happens in
    services.journal_writer.

Invariants enforced:
    - Exactly one of debit/credit is non-zero on every line; zero-amount
      template lines (for example VAT at a zero rate) are omitted.
    - Line amounts carry each currency's posting places (whole units for
      JPY); base amounts use the base currency's.
    - Every draft returned balances to within 0.01 in both currencies.
    - The only automatic correction is rounding-remainder absorption: a
      difference no larger than ``max_absorption`` (in hundredths, scaled to
      the currency's minor units) is added to the largest
      line on the short side, ties going to the earliest template line.
      Anything larger is an UnbalancedJournalError, never a silent fix.

Failure modes:
    - UnbalancedJournalError when the template cannot balance.
    - MissingAccountMappingError when a role has no account.
    - MissingPostingConfigurationError when a template basis has no value
      for this event (for example a POS component on an expense).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.events import FinanceEvent
from mda_kernel.domain.posting_rules import (
    SETTLEMENT_ROLE,
    AmountBasis,
    PostingRule,
    PostingRuleResolver,
    Side,
)
from mda_kernel.domain.tax import TaxSplit
from mda_kernel.exceptions import (
    MissingPostingConfigurationError,
    UnbalancedJournalError,
)
from mda_kernel.utils.rounding import MONEY_DECIMAL_PLACES, is_balanced, round_money

ZERO = Decimal("0")
DEFAULT_MAX_ABSORPTION = Decimal("0.05")


@dataclass(frozen=True)
class DraftLine:
    line_number: int
    role: str
    account_code: str
    account_name: str
    side: Side
    amount: Decimal
    amount_base: Decimal
    currency: str
    description: str

    @property
    def debit(self) -> Decimal:
        return self.amount if self.side is Side.DEBIT else ZERO

    @property
    def credit(self) -> Decimal:
        return self.amount if self.side is Side.CREDIT else ZERO

    @property
    def debit_base(self) -> Decimal:
        return self.amount_base if self.side is Side.DEBIT else ZERO

    @property
    def credit_base(self) -> Decimal:
        return self.amount_base if self.side is Side.CREDIT else ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "role": self.role,
            "account_code": self.account_code,
            "account_name": self.account_name,
            "debit": str(self.debit) if self.side is Side.DEBIT else None,
            "credit": str(self.credit) if self.side is Side.CREDIT else None,
            "currency": self.currency,
            "description": self.description,
        }


@dataclass(frozen=True)
class JournalDraft:
    """A balanced, not yet persisted journal."""

    organization_id: UUID
    smart_code: str
    event_ref: str
    transaction_date: date
    period_code: str
    currency: str
    base_currency: str
    exchange_rate: Decimal
    lines: tuple[DraftLine, ...]
    tax_split: TaxSplit
    rounding_adjustment: Decimal = ZERO

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    @property
    def total_debit_base(self) -> Decimal:
        return sum((line.debit_base for line in self.lines), ZERO)

    @property
    def total_credit_base(self) -> Decimal:
        return sum((line.credit_base for line in self.lines), ZERO)

    @property
    def is_balanced(self) -> bool:
        return is_balanced(self.total_debit, self.total_credit) and is_balanced(
            self.total_debit_base, self.total_credit_base
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "smart_code": self.smart_code,
            "event_ref": self.event_ref,
            "transaction_date": self.transaction_date.isoformat(),
            "period_code": self.period_code,
            "currency": self.currency,
            "lines": [line.to_dict() for line in self.lines],
            "total_debit": str(self.total_debit),
            "total_credit": str(self.total_credit),
            "tax": self.tax_split.to_dict(),
        }


def _absorb_remainder(
    sides: list[Side], amounts: list[Decimal], max_absorption: Decimal
) -> tuple[list[Decimal], Decimal]:
    """Push a small debit/credit gap into the largest line on the short side."""
    debits = sum((a for s, a in zip(sides, amounts) if s is Side.DEBIT), ZERO)
    credits = sum((a for s, a in zip(sides, amounts) if s is Side.CREDIT), ZERO)
    diff = debits - credits
    if diff == 0 or abs(diff) > max_absorption:
        return amounts, ZERO

    short_side = Side.CREDIT if diff > 0 else Side.DEBIT
    candidates = [i for i, s in enumerate(sides) if s is short_side]
    if not candidates:
        return amounts, ZERO

    # max() keeps the first of equal maxima, which is template order
    target = max(candidates, key=lambda i: amounts[i])
    adjusted = list(amounts)
    adjusted[target] += abs(diff)
    return adjusted, abs(diff)


class JournalBuilder:
    """
    Assembles balanced journal drafts.

    Contract:
        ``build`` receives an already validated event, the period code the
        gate attached, the resolved rule and the tax split; it resolves each
        role to an account and returns a balanced draft or raises.
    """

    def __init__(
        self,
        resolver: PostingRuleResolver,
        max_absorption: Decimal = DEFAULT_MAX_ABSORPTION,
    ):
        self._resolver = resolver
        self._max_absorption = max_absorption

    def build(
        self,
        event: FinanceEvent,
        period_code: str,
        rule: PostingRule,
        tax_split: TaxSplit,
    ) -> JournalDraft:
        bases: dict[AmountBasis, Decimal] = {
            AmountBasis.GROSS: tax_split.gross,
            AmountBasis.NET: tax_split.net,
            AmountBasis.TAX: tax_split.tax,
        }
        context = event.context
        if context is not None:
            for name, value in context.components().items():
                bases[AmountBasis(name)] = value

        places = CurrencyRegistry.posting_places(event.transaction_currency)
        base_places = CurrencyRegistry.posting_places(event.base_currency)

        roles: list[str] = []
        sides: list[Side] = []
        amounts: list[Decimal] = []
        descriptions: list[str] = []
        for template in rule.lines:
            if template.basis is AmountBasis.FIXED:
                raw = template.amount
            elif template.basis in bases:
                raw = bases[template.basis] * template.ratio
            else:
                raise MissingPostingConfigurationError(
                    str(event.organization_id),
                    f"{rule.smart_code} (basis {template.basis.value} unavailable)",
                )
            amount = round_money(raw, places)
            if amount == 0:
                continue
            role = template.role
            if role == SETTLEMENT_ROLE:
                role = (context.settlement_role() if context else None) or "BANK"
            roles.append(role)
            sides.append(template.side)
            amounts.append(amount)
            descriptions.append(self._describe(template.description or rule.description, event))

        amounts, adjustment = _absorb_remainder(sides, amounts, self._absorption_limit(places))

        rate = event.exchange_rate
        base_amounts = [round_money(a * rate, base_places) for a in amounts]
        base_amounts, _ = _absorb_remainder(sides, base_amounts, self._absorption_limit(base_places))

        lines = []
        for number, (role, side, amount, amount_base, description) in enumerate(
            zip(roles, sides, amounts, base_amounts, descriptions), start=1
        ):
            account = self._resolver.resolve_account(event.organization_id, role)
            lines.append(
                DraftLine(
                    line_number=number,
                    role=role,
                    account_code=account.code,
                    account_name=account.name,
                    side=side,
                    amount=amount,
                    amount_base=amount_base,
                    currency=event.transaction_currency,
                    description=description,
                )
            )

        draft = JournalDraft(
            organization_id=event.organization_id,
            smart_code=event.smart_code,
            event_ref=event.idempotency_key,
            transaction_date=event.transaction_date,
            period_code=period_code,
            currency=event.transaction_currency,
            base_currency=event.base_currency,
            exchange_rate=rate,
            lines=tuple(lines),
            tax_split=tax_split,
            rounding_adjustment=adjustment,
        )
        self._assert_balanced(draft)
        return draft

    def _absorption_limit(self, places: int) -> Decimal:
        # The configured limit is in hundredths; keep it as a count of minor units
        return self._max_absorption.scaleb(MONEY_DECIMAL_PLACES - places)

    @staticmethod
    def _describe(base: str, event: FinanceEvent) -> str:
        note = event.context.note if event.context else None
        text = f"{base} - {note}" if base and note else (base or note or event.smart_code)
        return text[:500]

    @staticmethod
    def _assert_balanced(draft: JournalDraft) -> None:
        has_both_sides = any(l.side is Side.DEBIT for l in draft.lines) and any(
            l.side is Side.CREDIT for l in draft.lines
        )
        if not has_both_sides or not is_balanced(draft.total_debit, draft.total_credit):
            raise UnbalancedJournalError(
                str(draft.total_debit), str(draft.total_credit), draft.currency
            )
        if not is_balanced(draft.total_debit_base, draft.total_credit_base):
            raise UnbalancedJournalError(
                str(draft.total_debit_base), str(draft.total_credit_base), draft.base_currency
            )

    def build_reversal(
        self,
        original: JournalDraft,
        reversal_date: date,
        period_code: str,
        event_ref: str,
    ) -> JournalDraft:
        """Mirror *original*: same accounts and amounts, sides swapped."""
        lines = tuple(
            replace(
                line,
                side=line.side.opposite(),
                description=f"Reversal: {line.description}"[:500],
            )
            for line in original.lines
        )
        draft = replace(
            original,
            lines=lines,
            transaction_date=reversal_date,
            period_code=period_code,
            event_ref=event_ref,
            rounding_adjustment=ZERO,
        )
        self._assert_balanced(draft)
        return draft
