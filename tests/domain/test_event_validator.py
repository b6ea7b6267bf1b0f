"""
Event validation and sanitization.

Verifies:
- every violation names the offending field
- caller-supplied lines are rejected
- exchange rate rules for same-currency and cross-currency events
- free text is stripped of markup and control characters
"""

from dataclasses import replace
from decimal import Decimal
from uuid import UUID

import pytest

from mda_kernel.domain.event_validator import EventValidator, sanitize_text
from mda_kernel.domain.events import (
    CommissionContext,
    ExpenseContext,
    IngestionMetadata,
    RevenueContext,
)
from mda_kernel.exceptions import EventValidationError


@pytest.fixture
def validator():
    return EventValidator(max_amount=Decimal("100000000"), text_max_length=50)


def _fields(violations):
    return {v.field for v in violations}


class TestValidEvents:
    def test_revenue_event_passes(self, validator, make_event):
        assert validator.validate(make_event()) == []

    def test_missing_context_gets_default(self, validator, make_event):
        event = make_event("SALON.FINANCE.EXPENSE.SALARY.v1", "15000")
        sanitized = validator.validate_or_raise(event)
        assert isinstance(sanitized.context, ExpenseContext)

    def test_cross_currency_with_rate(self, validator, make_event):
        event = make_event(currency="USD", base_currency="AED", exchange_rate="3.6725")
        assert validator.validate(event) == []

    def test_whole_yen_amount(self, validator, make_event):
        event = make_event(amount="1000", currency="JPY", base_currency="AED", exchange_rate="0.0245")
        assert validator.validate(event) == []


class TestViolations:
    @pytest.mark.parametrize("amount", ["0", "-5", "10.005", "100000000"])
    def test_bad_amounts(self, validator, make_event, amount):
        assert _fields(validator.validate(make_event(amount=amount))) == {"total_amount"}

    def test_fractional_yen_rejected(self, validator, make_event):
        event = make_event(amount="1000.50", currency="JPY", base_currency="AED", exchange_rate="0.0245")
        violations = validator.validate(event)
        assert _fields(violations) == {"total_amount"}
        assert "0 decimal places for JPY" in violations[0].reason

    def test_non_finite_amount(self, validator, make_event):
        event = replace(make_event(), total_amount=Decimal("NaN"))
        assert _fields(validator.validate(event)) == {"total_amount"}

    def test_malformed_smart_code(self, validator, make_event):
        event = make_event(smart_code="salon.revenue", context=RevenueContext())
        assert "smart_code" in _fields(validator.validate(event))

    def test_unknown_category(self, validator, make_event):
        event = make_event(smart_code="SALON.HR.LEAVE.ANNUAL.v1")
        assert _fields(validator.validate(event)) == {"smart_code"}

    def test_unknown_currency(self, validator, make_event):
        event = make_event(currency="XYZ")
        assert {"transaction_currency", "base_currency"} <= _fields(validator.validate(event))

    def test_lower_case_currency(self, validator, make_event):
        event = make_event(currency="aed")
        assert "transaction_currency" in _fields(validator.validate(event))

    def test_rate_must_be_one_for_same_currency(self, validator, make_event):
        event = make_event(exchange_rate="1.1")
        assert _fields(validator.validate(event)) == {"exchange_rate"}

    def test_zero_rate(self, validator, make_event):
        event = make_event(currency="USD", base_currency="AED", exchange_rate="0")
        assert _fields(validator.validate(event)) == {"exchange_rate"}

    def test_lines_must_be_empty(self, validator, make_event):
        event = replace(make_event(), lines=({"account": "1100", "debit": "525"},))
        assert _fields(validator.validate(event)) == {"lines"}

    def test_nil_organization(self, validator, make_event):
        event = replace(make_event(), organization_id=UUID(int=0))
        assert _fields(validator.validate(event)) == {"organization_id"}

    def test_context_variant_must_match_kind(self, validator, make_event):
        event = make_event("SALON.FINANCE.EXPENSE.RENT.v1", context=RevenueContext())
        assert _fields(validator.validate(event)) == {"context"}

    def test_commission_requires_staff(self, validator, make_event):
        event = make_event("SALON.POS.EOD.COMMISSION.v1", "50", context=CommissionContext())
        assert _fields(validator.validate(event)) == {"context.staff_id"}

    def test_commission_without_context_requires_staff(self, validator, make_event):
        event = make_event("SALON.POS.EOD.COMMISSION.v1", "50")
        assert _fields(validator.validate(event)) == {"context.staff_id"}

    def test_source_system_required(self, validator, make_event):
        event = replace(make_event(), metadata=IngestionMetadata(source_system=""))
        assert _fields(validator.validate(event)) == {"metadata.source_system"}

    def test_raise_lists_all_fields(self, validator, make_event):
        event = make_event(amount="-1", currency="XYZ")
        with pytest.raises(EventValidationError) as exc_info:
            validator.validate_or_raise(event)
        assert exc_info.value.code == "SchemaViolation"
        assert "total_amount" in exc_info.value.message


class TestSanitization:
    def test_strips_markup_and_controls(self):
        assert sanitize_text("<b>Hair</b>\x00cut\n\tfor  Sara") == "Hair cut for Sara"

    def test_empty_after_cleaning(self):
        assert sanitize_text("<br/>  ") is None

    def test_caps_length(self):
        assert len(sanitize_text("x" * 600, 500)) == 500

    def test_context_note_cleaned(self, validator, make_event):
        event = make_event(
            context=RevenueContext(note="<script>alert(1)</script> Blow dry " + "y" * 80)
        )
        sanitized = validator.validate_or_raise(event)
        assert "<" not in sanitized.context.note
        assert len(sanitized.context.note) <= 50
