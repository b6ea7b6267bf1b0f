"""
NaturalLanguageParser -- free text to a draft finance event.

Responsibility:
    Extracts amount, currency, date, category and payment channel from an
    operator's sentence using ordered pattern rules, and maps the category
    to an operation and a smart code.  The output is an untrusted draft: the
    natural-language service pushes it through the same validator and
    pipeline as any other caller.

Architecture position:
    Kernel > Domain -- pure apart from the injected Clock, which supplies
    "today" and the default year/month.

Rule order:
    1. amount + currency  ("AED 15,000", "15,000 AED", "$120", "250 dirhams")
    2. date phrase        (ISO, "5 Oct 2025", "October 5", "on the 3rd",
                           "05/10/2025", "today", "yesterday")
    3. category keyword   (first matching category in CATEGORY_RULES order)
    4. channel keyword    (cash, card, bank transfer)

Determinism:
    The same text and the same clock always produce the same result.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from mda_kernel.domain.clock import Clock
from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.events import PaymentMethod
from mda_kernel.domain.smart_code import smart_code_for


@dataclass(frozen=True)
class CategoryRule:
    category: str
    operation: str
    module: str
    smart_category: str
    subcategory: str
    pattern: re.Pattern


def _words(*alternatives: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


# Ordered: the first category whose pattern matches wins.
CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("BANK_FEE", "bank_fee", "FINANCE", "BANK", "FEE",
                 _words(r"bank\s+(?:fees?|charges?)", r"transfer\s+fees?", r"service\s+charges?")),
    CategoryRule("SALARY", "expense", "FINANCE", "EXPENSE", "SALARY",
                 _words(r"salary", r"salaries", r"payroll", r"wages?")),
    CategoryRule("COMMISSION", "expense", "FINANCE", "EXPENSE", "COMMISSION",
                 _words(r"commissions?")),
    CategoryRule("RENT", "expense", "FINANCE", "EXPENSE", "RENT",
                 _words(r"rent", r"rental", r"lease")),
    CategoryRule("UTILITIES", "expense", "FINANCE", "EXPENSE", "UTILITIES",
                 _words(r"electricity", r"dewa", r"utilities", r"utility", r"water\s+bill",
                        r"internet", r"phone\s+bill")),
    CategoryRule("SUPPLIES", "expense", "FINANCE", "EXPENSE", "SUPPLIES",
                 _words(r"supplies", r"supply", r"consumables",
                        r"(?:bought|purchased?)\s+(?:\w+\s+){0,3}products?")),
    CategoryRule("POS_EOD", "pos_eod", "POS", "EOD", "SUMMARY",
                 _words(r"end\s+of\s+day", r"eod", r"daily\s+close", r"day\s+close",
                        r"pos\s+summary")),
    CategoryRule("PRODUCT_SALES", "revenue", "FINANCE", "REVENUE", "PRODUCT",
                 _words(r"sold", r"product\s+sales?", r"retail\s+sales?")),
    CategoryRule("SERVICE_REVENUE", "revenue", "FINANCE", "REVENUE", "SERVICE",
                 _words(r"services?", r"haircuts?", r"hair", r"client", r"customer",
                        r"revenue", r"received", r"treatment")),
)

EXPENSE_SUGGESTIONS = ("SALARY", "RENT", "UTILITIES", "SUPPLIES", "COMMISSION", "BANK_FEE")
REVENUE_SUGGESTIONS = ("SERVICE_REVENUE", "PRODUCT_SALES", "POS_EOD")

_OUTFLOW_HINT = _words(r"paid", r"pay", r"spent", r"bought", r"purchased?", r"expense")
_INFLOW_HINT = _words(r"received", r"earned", r"collected", r"income", r"sales?")

_AMOUNT = r"(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
_CURRENCY_WORD = r"(?P<currency>[A-Za-z]{3}|dirhams?|dhs?|[$£€])"
_CURRENCY_FIRST = re.compile(r"(?<![A-Za-z])" + _CURRENCY_WORD + r"\s?" + _AMOUNT + r"(?!\d|[.,]\d)")
_AMOUNT_FIRST = re.compile(r"(?<!\d)(?<!\d[.,])" + _AMOUNT + r"\s?" + _CURRENCY_WORD + r"\b")
_BARE_AMOUNT = re.compile(r"(?<![\w-])(?<!\d[.,])" + _AMOUNT + r"(?![\w-]|[.,]\d)")

_CURRENCY_ALIASES = {
    "$": "USD",
    "£": "GBP",
    "€": "EUR",
    "dh": "AED",
    "dhs": "AED",
    "dirham": "AED",
    "dirhams": "AED",
}

_MONTHS = {
    name.lower(): index
    for index in range(1, 13)
    for name in (calendar.month_name[index], calendar.month_abbr[index])
}
_MONTHS["sept"] = 9
_MONTH_NAMES = "|".join(sorted(_MONTHS, key=len, reverse=True))

_ISO_DATE = re.compile(r"\b(?P<y>\d{4})-(?P<m>\d{1,2})-(?P<d>\d{1,2})\b")
_DAY_MONTH = re.compile(
    r"\b(?P<d>\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?(?P<mon>" + _MONTH_NAMES + r")\.?(?:,?\s+(?P<y>\d{4}))?\b",
    re.IGNORECASE,
)
_MONTH_DAY = re.compile(
    r"\b(?P<mon>" + _MONTH_NAMES + r")\.?\s+(?P<d>\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(?P<y>\d{4}))?\b",
    re.IGNORECASE,
)
_SLASH_DATE = re.compile(r"\b(?P<d>\d{1,2})/(?P<m>\d{1,2})(?:/(?P<y>\d{4}))?\b")
_DAY_ONLY = re.compile(r"\bon\s+the\s+(?P<d>\d{1,2})(?:st|nd|rd|th)\b", re.IGNORECASE)
_RELATIVE = re.compile(r"\b(?P<word>today|yesterday)\b", re.IGNORECASE)

_CHANNEL_RULES: tuple[tuple[PaymentMethod, re.Pattern], ...] = (
    (PaymentMethod.CARD, _words(r"card", r"visa", r"mastercard", r"amex")),
    (PaymentMethod.BANK, _words(r"bank\s+transfer", r"transfer", r"wire", r"cheque", r"check")),
    (PaymentMethod.CASH, _words(r"cash")),
)


@dataclass(frozen=True)
class ParsedDraft:
    """Structured fields extracted from one sentence."""

    operation: str
    category: str
    smart_code: str
    amount: Decimal
    currency: str
    transaction_date: date
    payment_method: PaymentMethod | None
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "category": self.category,
            "smart_code": self.smart_code,
            "amount": str(self.amount),
            "currency": self.currency,
            "date": self.transaction_date.isoformat(),
            "payment_method": self.payment_method.value if self.payment_method else None,
            "description": self.description,
        }


@dataclass(frozen=True)
class ParseResult:
    """
    Outcome of parsing.

    ``classified`` is False when no category keyword matched; ``draft`` is
    then None and ``suggestions`` lists plausible categories.  Missing
    amounts are reported through ``problems``.
    """

    classified: bool
    draft: ParsedDraft | None = None
    suggestions: tuple[str, ...] = ()
    problems: tuple[str, ...] = ()
    matched_rules: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_success(self) -> bool:
        return self.classified and self.draft is not None and not self.problems


class NaturalLanguageParser:
    """Deterministic sentence parser."""

    def __init__(self, clock: Clock, domain: str = "SALON", default_currency: str = "AED"):
        self._clock = clock
        self._domain = domain
        self._default_currency = default_currency

    def parse(self, text: str) -> ParseResult:
        text = (text or "").strip()
        matched: list[str] = []
        problems: list[str] = []

        date_value, date_span = self._parse_date(text)
        if date_span is not None:
            matched.append("date")
        # Keep date digits out of the bare-amount search
        amount_text = text if date_span is None else text[: date_span[0]] + " " + text[date_span[1]:]

        amount, currency = self._parse_amount(amount_text)
        if amount is not None:
            matched.append("amount")
        else:
            problems.append("amount: no amount found")

        rule = self._classify(text)
        if rule is None:
            return ParseResult(
                classified=False,
                suggestions=self._suggest(text),
                problems=tuple(problems),
                matched_rules=tuple(matched),
            )
        matched.append(f"category:{rule.category}")

        payment_method = self._parse_channel(text)
        if payment_method is not None:
            matched.append(f"channel:{payment_method.value}")

        if amount is None:
            return ParseResult(
                classified=True,
                problems=tuple(problems),
                matched_rules=tuple(matched),
            )

        draft = ParsedDraft(
            operation=rule.operation,
            category=rule.category,
            smart_code=smart_code_for(self._domain, rule.module, rule.smart_category, rule.subcategory),
            amount=amount,
            currency=currency,
            transaction_date=date_value,
            payment_method=payment_method,
            description=text,
        )
        return ParseResult(classified=True, draft=draft, matched_rules=tuple(matched))

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _parse_amount(self, text: str) -> tuple[Decimal | None, str]:
        for pattern in (_CURRENCY_FIRST, _AMOUNT_FIRST):
            for match in pattern.finditer(text):
                currency = self._normalize_currency(match.group("currency"))
                if currency is None:
                    continue
                amount = self._to_decimal(match.group("amount"))
                if amount is not None:
                    return amount, currency

        for match in _BARE_AMOUNT.finditer(text):
            amount = self._to_decimal(match.group("amount"))
            if amount is not None and amount > 0:
                return amount, self._default_currency
        return None, self._default_currency

    def _normalize_currency(self, token: str) -> str | None:
        alias = _CURRENCY_ALIASES.get(token.lower())
        if alias:
            return alias
        code = token.upper()
        # Lower-case words such as "try" only count for the default currency
        if token != code and code != self._default_currency:
            return None
        return code if CurrencyRegistry.is_valid(code) else None

    @staticmethod
    def _to_decimal(raw: str) -> Decimal | None:
        try:
            return Decimal(raw.replace(",", ""))
        except InvalidOperation:
            return None

    def _parse_date(self, text: str) -> tuple[date, tuple[int, int] | None]:
        today = self._clock.today()

        for pattern in (_ISO_DATE, _DAY_MONTH, _MONTH_DAY, _SLASH_DATE, _DAY_ONLY):
            for match in pattern.finditer(text):
                parts = match.groupdict()
                year = int(parts["y"]) if parts.get("y") else today.year
                if parts.get("mon"):
                    month = _MONTHS[parts["mon"].lower().rstrip(".")]
                elif parts.get("m"):
                    month = int(parts["m"])
                else:
                    month = today.month
                try:
                    return date(year, month, int(parts["d"])), match.span()
                except ValueError:
                    continue

        relative = _RELATIVE.search(text)
        if relative:
            offset = 1 if relative.group("word").lower() == "yesterday" else 0
            return today - timedelta(days=offset), relative.span()
        return today, None

    @staticmethod
    def _classify(text: str) -> CategoryRule | None:
        for rule in CATEGORY_RULES:
            if rule.pattern.search(text):
                return rule
        return None

    @staticmethod
    def _parse_channel(text: str) -> PaymentMethod | None:
        for method, pattern in _CHANNEL_RULES:
            if pattern.search(text):
                return method
        return None

    @staticmethod
    def _suggest(text: str) -> tuple[str, ...]:
        if _OUTFLOW_HINT.search(text):
            return EXPENSE_SUGGESTIONS
        if _INFLOW_HINT.search(text):
            return REVENUE_SUGGESTIONS
        return tuple(rule.category for rule in CATEGORY_RULES)
