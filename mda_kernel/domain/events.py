"""
Events -- the canonical finance event and its typed context variants.

Responsibility:
    Defines ``FinanceEvent`` (the sole input contract of the posting
    pipeline), ``IngestionMetadata``, and one frozen context dataclass per
    ``EventKind``.  ``FinanceEvent.from_payload`` is the only place a loose
    wire dict is accepted; everything past it works with typed values.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - ``lines`` is carried only so the validator can reject a non-empty
      value; GL lines are always engine-derived.
    - The context variant is selected by the smart code's kind; a mismatched
      or unknown field is a SchemaViolation, not silently dropped.

Failure modes:
    - EventValidationError from ``from_payload`` when a field cannot be
      parsed at all (non-numeric amount, malformed date or UUID).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, ClassVar
from uuid import UUID

from mda_kernel.domain.smart_code import EventKind, InvalidSmartCode, SmartCode
from mda_kernel.exceptions import EventValidationError, SchemaViolation
from mda_kernel.utils.hashing import hash_payload


class Channel(str, Enum):
    """How the event entered the engine."""

    MANUAL = "MANUAL"
    API = "API"
    NATURAL_LANGUAGE = "NATURAL_LANGUAGE"
    POS = "POS"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK = "bank"
    CARD = "card"


# Account role that settles a payment made by each method
SETTLEMENT_ROLES: dict[PaymentMethod, str] = {
    PaymentMethod.CASH: "CASH",
    PaymentMethod.BANK: "BANK",
    PaymentMethod.CARD: "CARD_CLEARING",
}


# =============================================================================
# Context variants
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class BusinessContext:
    """Fields shared by every context variant."""

    kind: ClassVar[EventKind]
    text_fields: ClassVar[tuple[str, ...]] = ("note",)

    channel: Channel = Channel.MANUAL
    # Display-only free text
    note: str | None = None

    @property
    def tax_inclusive(self) -> bool:
        return True

    @property
    def declared_tax(self) -> Decimal | None:
        """Tax amount fixed by the source document, bypassing the rate table."""
        return None

    def components(self) -> dict[str, Decimal]:
        """Named amounts a posting rule may use as a derivation basis."""
        return {}

    def settlement_role(self) -> str | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, val in data.items():
            if isinstance(val, Enum):
                data[key] = val.value
            elif isinstance(val, date):
                data[key] = val.isoformat()
            elif isinstance(val, Decimal):
                data[key] = str(val)
        return data


@dataclass(frozen=True, kw_only=True)
class ExpenseContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.EXPENSE
    text_fields: ClassVar[tuple[str, ...]] = ("note", "vendor_name")

    payment_method: PaymentMethod = PaymentMethod.BANK
    vat_inclusive: bool = True
    vendor_name: str | None = None

    @property
    def tax_inclusive(self) -> bool:
        return self.vat_inclusive

    def settlement_role(self) -> str | None:
        return SETTLEMENT_ROLES[self.payment_method]


@dataclass(frozen=True, kw_only=True)
class RevenueContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.REVENUE
    text_fields: ClassVar[tuple[str, ...]] = ("note", "customer_name", "staff_name")

    payment_method: PaymentMethod = PaymentMethod.CASH
    vat_inclusive: bool = True
    customer_name: str | None = None
    staff_name: str | None = None

    @property
    def tax_inclusive(self) -> bool:
        return self.vat_inclusive

    def settlement_role(self) -> str | None:
        return SETTLEMENT_ROLES[self.payment_method]


@dataclass(frozen=True, kw_only=True)
class BankFeeContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.BANK_FEE
    text_fields: ClassVar[tuple[str, ...]] = ("note", "bank_reference")

    bank_reference: str | None = None

    def settlement_role(self) -> str | None:
        return SETTLEMENT_ROLES[PaymentMethod.BANK]


@dataclass(frozen=True, kw_only=True)
class PosSummaryContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.POS_SUMMARY

    business_date: date | None = None
    cash: Decimal = Decimal("0")
    card: Decimal = Decimal("0")
    other: Decimal = Decimal("0")
    vat_collected: Decimal | None = None

    @property
    def declared_tax(self) -> Decimal | None:
        return self.vat_collected

    def components(self) -> dict[str, Decimal]:
        return {"cash": self.cash, "card": self.card, "other": self.other}


@dataclass(frozen=True, kw_only=True)
class CommissionContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.POS_COMMISSION
    text_fields: ClassVar[tuple[str, ...]] = ("note", "staff_id", "staff_name")

    staff_id: str = ""
    staff_name: str | None = None
    business_date: date | None = None


@dataclass(frozen=True, kw_only=True)
class CashVarianceContext(BusinessContext):
    kind: ClassVar[EventKind] = EventKind.POS_CASH_VARIANCE

    business_date: date | None = None
    expected_cash: Decimal = Decimal("0")
    counted_cash: Decimal = Decimal("0")


CONTEXT_TYPES: dict[EventKind, type[BusinessContext]] = {
    cls.kind: cls
    for cls in (
        ExpenseContext,
        RevenueContext,
        BankFeeContext,
        PosSummaryContext,
        CommissionContext,
        CashVarianceContext,
    )
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "0"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_decimal(value: Any) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _parse_optional_decimal(value: Any) -> Decimal | None:
    return None if value is None else _parse_decimal(value)


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


_FIELD_PARSERS: dict[str, Callable[[Any], Any]] = {
    "channel": Channel,
    "payment_method": PaymentMethod,
    "vat_inclusive": _parse_bool,
    "business_date": _parse_date,
    "cash": _parse_decimal,
    "card": _parse_decimal,
    "other": _parse_decimal,
    "vat_collected": _parse_optional_decimal,
    "expected_cash": _parse_decimal,
    "counted_cash": _parse_decimal,
}


def parse_context(
    kind: EventKind, data: dict[str, Any] | None
) -> tuple[BusinessContext | None, list[SchemaViolation]]:
    """Build the typed context for *kind* from a loose dict."""
    context_cls = CONTEXT_TYPES[kind]
    known = {f.name for f in fields(context_cls)}
    violations: list[SchemaViolation] = []
    values: dict[str, Any] = {}

    for key, raw in (data or {}).items():
        if key not in known:
            violations.append(SchemaViolation(f"context.{key}", f"unexpected field for {kind.value}"))
            continue
        parser = _FIELD_PARSERS.get(key)
        try:
            values[key] = parser(raw) if parser and raw is not None else raw
        except ValueError as exc:
            violations.append(SchemaViolation(f"context.{key}", str(exc)))

    if violations:
        return None, violations
    return context_cls(**values), []


# =============================================================================
# Finance event
# =============================================================================


@dataclass(frozen=True)
class IngestionMetadata:
    source_system: str = "manual"
    external_reference: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class FinanceEvent:
    """
    One business occurrence to be posted.

    Contract:
        Callers express intent only through ``total_amount`` and
        ``smart_code``; ``lines`` must be empty.

    Guarantees:
        - ``fingerprint()`` is a stable hash of the business content,
          independent of ingestion metadata.
        - ``idempotency_key`` is always populated: caller key first, then
          ``source_system:external_reference``, then a content hash.
    """

    organization_id: UUID
    smart_code: str
    transaction_date: date
    total_amount: Decimal
    transaction_currency: str
    base_currency: str
    exchange_rate: Decimal = Decimal("1")
    context: BusinessContext | None = None
    metadata: IngestionMetadata = field(default_factory=IngestionMetadata)
    lines: tuple = ()

    @property
    def code(self) -> SmartCode:
        return SmartCode.parse(self.smart_code)

    @property
    def kind(self) -> EventKind | None:
        try:
            return self.code.kind
        except InvalidSmartCode:
            return None

    @property
    def is_cross_currency(self) -> bool:
        return self.transaction_currency != self.base_currency

    @property
    def idempotency_key(self) -> str:
        if self.metadata.idempotency_key:
            return self.metadata.idempotency_key
        if self.metadata.external_reference:
            return f"{self.metadata.source_system}:{self.metadata.external_reference}"
        return f"auto:{self.fingerprint()[:40]}"

    def with_context(self, context: BusinessContext) -> FinanceEvent:
        return replace(self, context=context)

    def business_payload(self) -> dict[str, Any]:
        return {
            "organization_id": str(self.organization_id),
            "smart_code": self.smart_code,
            "transaction_date": self.transaction_date.isoformat(),
            "total_amount": self.total_amount,
            "transaction_currency": self.transaction_currency,
            "base_currency": self.base_currency,
            "exchange_rate": self.exchange_rate,
            "context": self.context.to_dict() if self.context else None,
        }

    def fingerprint(self) -> str:
        return hash_payload(self.business_payload())

    def to_payload(self) -> dict[str, Any]:
        data = self.business_payload()
        data["total_amount"] = str(self.total_amount)
        data["exchange_rate"] = str(self.exchange_rate)
        data["metadata"] = asdict(self.metadata)
        data["lines"] = list(self.lines)
        return data

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> FinanceEvent:
        """
        Build an event from the external wire shape.

        Raises:
            EventValidationError: listing every field that could not be parsed.
        """
        violations: list[SchemaViolation] = []

        def take(name: str, parser: Callable[[Any], Any], required: bool = True) -> Any:
            raw = data.get(name)
            if raw is None:
                if required:
                    violations.append(SchemaViolation(name, "required"))
                return None
            try:
                return parser(raw)
            except (ValueError, TypeError) as exc:
                violations.append(SchemaViolation(name, str(exc) or "invalid value"))
                return None

        organization_id = take("organization_id", lambda v: v if isinstance(v, UUID) else UUID(str(v)))
        smart_code = take("smart_code", str)
        transaction_date = take("transaction_date", _parse_date)
        total_amount = take("total_amount", _parse_decimal)
        transaction_currency = take("transaction_currency", str)
        base_currency = take("base_currency", str, required=False) or transaction_currency
        exchange_rate = take("exchange_rate", _parse_decimal, required=False)
        if exchange_rate is None:
            exchange_rate = Decimal("1")

        raw_meta = data.get("metadata") or {}
        metadata = IngestionMetadata(
            source_system=str(raw_meta.get("source_system") or "api"),
            external_reference=raw_meta.get("external_reference"),
            idempotency_key=raw_meta.get("idempotency_key"),
        )

        context = None
        kind = SmartCode.parse(smart_code).kind if SmartCode.is_valid(smart_code or "") else None
        if kind is not None:
            context, context_violations = parse_context(kind, data.get("context"))
            violations.extend(context_violations)

        lines = data.get("lines") or ()
        if violations:
            raise EventValidationError(violations)

        return cls(
            organization_id=organization_id,
            smart_code=smart_code,
            transaction_date=transaction_date,
            total_amount=total_amount,
            transaction_currency=transaction_currency,
            base_currency=base_currency,
            exchange_rate=exchange_rate,
            context=context,
            metadata=metadata,
            lines=tuple(lines),
        )
