"""
Module: mda_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries.  The trial balance is a derived
    view over posted GL lines; no balance is stored anywhere.
Architecture position: Kernel > Selectors.  May import from models/ only.

Invariants enforced:
    - Selectors never add, flush or commit; the caller owns the session.
    - Every posted transaction balances, so the debit and credit totals of
      a trial balance agree per currency and in base currency.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mda_kernel.models.transaction import GLLine, PostedTransaction
from mda_kernel.utils.rounding import round_money

ZERO = Decimal("0")


@dataclass(frozen=True)
class TrialBalanceRow:
    """Debit and credit totals for one account in one currency."""

    account_code: str
    account_name: str
    currency: str
    debit_total: Decimal
    credit_total: Decimal
    debit_total_base: Decimal
    credit_total_base: Decimal
    line_count: int

    @property
    def balance(self) -> Decimal:
        """Net balance (debits - credits)."""
        return self.debit_total - self.credit_total

    @property
    def balance_base(self) -> Decimal:
        return self.debit_total_base - self.credit_total_base

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_code": self.account_code,
            "account_name": self.account_name,
            "currency": self.currency,
            "debit": str(self.debit_total),
            "credit": str(self.credit_total),
            "balance": str(self.balance),
            "debit_base": str(self.debit_total_base),
            "credit_base": str(self.credit_total_base),
            "line_count": self.line_count,
        }


class LedgerSelector:
    def __init__(self, session: Session):
        self.session = session

    def trial_balance(
        self,
        organization_id: UUID,
        period_code: str | None = None,
        currency: str | None = None,
    ) -> list[TrialBalanceRow]:
        """
        Per-account totals of posted GL lines, ordered by account code then
        currency.  Reversals are ordinary posted lines, so a reversed
        transaction nets to zero.
        """
        query = (
            select(
                GLLine.account_code,
                GLLine.account_name,
                GLLine.currency,
                func.sum(GLLine.debit).label("debit_total"),
                func.sum(GLLine.credit).label("credit_total"),
                func.sum(GLLine.debit_base).label("debit_total_base"),
                func.sum(GLLine.credit_base).label("credit_total_base"),
                func.count(GLLine.id).label("line_count"),
            )
            .join(PostedTransaction, GLLine.transaction_id == PostedTransaction.id)
            .where(GLLine.organization_id == organization_id)
            .group_by(GLLine.account_code, GLLine.account_name, GLLine.currency)
            .order_by(GLLine.account_code, GLLine.currency)
        )
        if period_code is not None:
            query = query.where(PostedTransaction.period_code == period_code)
        if currency is not None:
            query = query.where(GLLine.currency == currency)

        return [
            TrialBalanceRow(
                account_code=row.account_code,
                account_name=row.account_name,
                currency=row.currency,
                # SQLite sums NUMERIC as REAL; quantize back to cents
                debit_total=round_money(row.debit_total or ZERO),
                credit_total=round_money(row.credit_total or ZERO),
                debit_total_base=round_money(row.debit_total_base or ZERO),
                credit_total_base=round_money(row.credit_total_base or ZERO),
                line_count=row.line_count,
            )
            for row in self.session.execute(query).all()
        ]
