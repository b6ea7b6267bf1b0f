"""
POS summary reconciliation and event derivation.

Verifies:
- payments must add up to gross sales within 0.01
- one sales event, one commission event per staff member, one variance event
- deterministic idempotency keys per organization, day and staff member
"""

from decimal import Decimal

from mda_kernel.domain.events import CashVarianceContext, CommissionContext, PosSummaryContext
from mda_kernel.domain.pos_summary import check_reconciliation, check_shape, derive_events


class TestShape:
    def test_valid(self, make_summary):
        assert check_shape(make_summary()) == []

    def test_negative_payment(self, make_summary):
        fields = {v.field for v in check_shape(make_summary(card="-1"))}
        assert fields == {"payments.card"}

    def test_zero_gross(self, make_summary):
        fields = {v.field for v in check_shape(make_summary(gross_sales="0", cash="0", card="0"))}
        assert "gross_sales" in fields

    def test_vat_above_gross(self, make_summary):
        fields = {v.field for v in check_shape(make_summary(vat_collected="4000"))}
        assert fields == {"vat_collected"}

    def test_duplicate_staff(self, make_summary):
        summary = make_summary(commissions=(("STY-001", "10"), ("STY-001", "20")))
        assert [v.field for v in check_shape(summary)] == ["commissions[1].staff_id"]

    def test_missing_staff(self, make_summary):
        summary = make_summary(commissions=(("", "10"),))
        assert [v.field for v in check_shape(summary)] == ["commissions[0].staff_id"]


class TestReconciliation:
    def test_balanced(self, make_summary):
        assert check_reconciliation(make_summary()) == []

    def test_sub_cent_difference_tolerated(self, make_summary):
        summary = make_summary(gross_sales="3150.00", cash="1050.00", card="2099.995")
        assert check_reconciliation(summary) == []

    def test_mismatch(self, make_summary):
        violations = check_reconciliation(make_summary(card="2000.00"))
        assert len(violations) == 1
        assert violations[0].field == "payments"
        assert "-100.00" in violations[0].reason


class TestDerive:
    def test_sales_event(self, make_summary):
        derived = derive_events(make_summary(), "SALON", "AED")
        sales = derived.sales
        assert sales.smart_code == "SALON.POS.EOD.SUMMARY.v1"
        assert sales.total_amount == Decimal("3150.00")
        assert isinstance(sales.context, PosSummaryContext)
        assert sales.context.declared_tax == Decimal("150.00")
        assert sales.metadata.source_system == "pos"

    def test_commission_per_staff(self, make_summary):
        derived = derive_events(make_summary(), "SALON", "AED")
        assert [e.total_amount for e in derived.commissions] == [Decimal("120.00"), Decimal("80.00")]
        assert all(isinstance(e.context, CommissionContext) for e in derived.commissions)
        assert derived.totals.total_commission == Decimal("200.00")

    def test_zero_commission_skipped(self, make_summary):
        derived = derive_events(make_summary(commissions=(("STY-001", "0"),)), "SALON", "AED")
        assert derived.commissions == ()

    def test_no_variance_without_count(self, make_summary):
        derived = derive_events(make_summary(), "SALON", "AED")
        assert derived.cash_variance is None
        assert len(derived.in_posting_order()) == 3

    def test_cash_short(self, make_summary):
        derived = derive_events(make_summary(cash_counted="1040.00"), "SALON", "AED")
        variance = derived.cash_variance
        assert variance.smart_code == "SALON.POS.EOD.SHORT.v1"
        assert variance.total_amount == Decimal("10.00")
        assert isinstance(variance.context, CashVarianceContext)
        assert derived.totals.cash_variance == Decimal("-10.00")

    def test_cash_over(self, make_summary):
        derived = derive_events(make_summary(cash_counted="1055.50"), "SALON", "AED")
        assert derived.cash_variance.smart_code == "SALON.POS.EOD.OVER.v1"
        assert derived.cash_variance.total_amount == Decimal("5.50")

    def test_keys_are_deterministic(self, make_summary, org_id):
        first = derive_events(make_summary(), "SALON", "AED")
        second = derive_events(make_summary(), "SALON", "AED")
        assert [e.idempotency_key for e in first.in_posting_order()] == [
            e.idempotency_key for e in second.in_posting_order()
        ]
        assert first.sales.idempotency_key == f"pos-eod:{org_id}:2025-10-14:sales"
        assert first.commissions[0].idempotency_key == f"pos-eod:{org_id}:2025-10-14:commission:STY-001"
