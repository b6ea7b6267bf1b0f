"""
End-to-end posting through the orchestrator.

Verifies:
- the worked examples produce the expected GL lines and journal numbers
- idempotent re-posts return the original journal; a changed payload under
  the same key is rejected
- every rejection leaves no period, journal or line behind and is audited
- dry runs persist nothing
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from mda_kernel.domain.events import ExpenseContext, PaymentMethod, RevenueContext
from mda_kernel.exceptions import TransientStorageError
from mda_kernel.models.audit_event import AuditAction
from mda_kernel.models.transaction import PostedTransaction
from mda_services import PostingStatus


def _lines(result):
    return [(line["account_code"], line["debit"], line["credit"]) for line in result.lines]


class TestWorkedExamples:
    def test_service_revenue_with_vat(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(make_event(), test_actor_id)

        assert result.status is PostingStatus.POSTED
        assert result.journal_number == "JE-2025-10-000001"
        assert _lines(result) == [
            ("1100", "525.00", None),
            ("4100", None, "500.00"),
            ("2250", None, "25.00"),
        ]
        assert result.transaction.is_balanced
        assert result.transaction.period_code == "2025-10"

    def test_salary_has_no_vat(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(
            make_event("SALON.FINANCE.EXPENSE.SALARY.v1", "15000.00"), test_actor_id
        )
        assert _lines(result) == [("6100", "15000.00", None), ("1120", None, "15000.00")]

    def test_supplies_from_bank(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(
            make_event("SALON.FINANCE.EXPENSE.SUPPLIES.v1", "2100.00"), test_actor_id
        )
        assert _lines(result) == [
            ("6400", "2000.00", None),
            ("1450", "100.00", None),
            ("1120", None, "2100.00"),
        ]

    def test_supplies_paid_by_card(self, orchestrator, make_event, test_actor_id):
        event = make_event(
            "SALON.FINANCE.EXPENSE.SUPPLIES.v1",
            "525.00",
            context=ExpenseContext(payment_method=PaymentMethod.CARD, vendor_name="Beauty Wholesale"),
        )
        result = orchestrator.post_event(event, test_actor_id)
        assert _lines(result) == [
            ("6400", "500.00", None),
            ("1450", "25.00", None),
            ("1130", None, "525.00"),
        ]

    def test_card_revenue_settles_to_clearing(self, orchestrator, make_event, test_actor_id):
        event = make_event(context=RevenueContext(payment_method=PaymentMethod.CARD))
        result = orchestrator.post_event(event, test_actor_id)
        assert _lines(result)[0] == ("1130", "525.00", None)

    def test_vat_exclusive_amount(self, orchestrator, make_event, test_actor_id):
        event = make_event(
            "SALON.FINANCE.EXPENSE.UTILITIES.v1",
            "800.00",
            context=ExpenseContext(vat_inclusive=False),
        )
        result = orchestrator.post_event(event, test_actor_id)
        assert _lines(result) == [
            ("6300", "800.00", None),
            ("1450", "40.00", None),
            ("1120", None, "840.00"),
        ]

    def test_cross_currency_amounts_in_base(self, orchestrator, make_event, test_actor_id):
        event = make_event(currency="USD", base_currency="AED", exchange_rate="3.6725")
        result = orchestrator.post_event(event, test_actor_id)

        txn = result.transaction
        assert txn.currency == "USD"
        assert txn.total_debit == Decimal("525.00")
        assert txn.total_debit_base == Decimal("1928.06")
        assert txn.total_credit_base == Decimal("1928.06")
        assert [line.debit_base for line in txn.lines][0] == Decimal("1928.06")

    def test_journal_numbers_are_sequential(self, orchestrator, make_event, test_actor_id):
        numbers = [
            orchestrator.post_event(make_event(amount=amount), test_actor_id).journal_number
            for amount in ("100.00", "200.00", "300.00")
        ]
        assert numbers == ["JE-2025-10-000001", "JE-2025-10-000002", "JE-2025-10-000003"]

    def test_journal_numbers_restart_per_period(self, orchestrator, make_event, test_actor_id):
        orchestrator.post_event(make_event(), test_actor_id)
        result = orchestrator.post_event(
            make_event(transaction_date=date(2025, 9, 30)), test_actor_id
        )
        assert result.journal_number == "JE-2025-09-000001"

    def test_posting_is_audited(self, orchestrator, auditor_service, make_event, org_id, test_actor_id):
        result = orchestrator.post_event(make_event(), test_actor_id)
        posted = auditor_service.get_events(org_id, AuditAction.TRANSACTION_POSTED)
        assert len(posted) == 1
        assert posted[0].entity_id == str(result.transaction_id)
        assert posted[0].payload["smart_code"] == "SALON.FINANCE.REVENUE.SERVICE.v1"
        assert posted[0].actor_id == test_actor_id

    def test_config_version_recorded(self, orchestrator, make_event, session, config, test_actor_id):
        result = orchestrator.post_event(make_event(), test_actor_id)
        txn = session.get(PostedTransaction, result.transaction_id)
        assert txn.config_version == config.version_label


class TestOrganizationOverrides:
    def test_london_rent_is_exempt_and_uses_own_bank(self, orchestrator, make_event, london_org_id, test_actor_id):
        event = make_event(
            "SALON.FINANCE.EXPENSE.RENT.v1",
            "1200.00",
            currency="GBP",
            organization_id=london_org_id,
            context=ExpenseContext(),
        )
        result = orchestrator.post_event(event, test_actor_id)
        assert _lines(result) == [("6200", "1200.00", None), ("1125", None, "1200.00")]

    def test_london_uses_uk_standard_rate(self, orchestrator, make_event, london_org_id, test_actor_id):
        event = make_event(
            "SALON.FINANCE.EXPENSE.SUPPLIES.v1",
            "120.00",
            currency="GBP",
            organization_id=london_org_id,
        )
        result = orchestrator.post_event(event, test_actor_id)
        assert _lines(result) == [
            ("6400", "100.00", None),
            ("1450", "20.00", None),
            ("1125", None, "120.00"),
        ]

    def test_default_org_rent_carries_vat(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(
            make_event("SALON.FINANCE.EXPENSE.RENT.v1", "10500.00"), test_actor_id
        )
        assert _lines(result)[1] == ("1450", "500.00", None)


class TestIdempotency:
    def test_repost_returns_original(self, orchestrator, make_event, org_id, ledger_counts, test_actor_id):
        first = orchestrator.post_event(make_event(), test_actor_id)
        second = orchestrator.post_event(make_event(), test_actor_id)

        assert second.status is PostingStatus.ALREADY_POSTED
        assert second.success and second.duplicate
        assert second.transaction_id == first.transaction_id
        assert second.journal_number == first.journal_number
        assert ledger_counts(org_id) == (1, 3, 1)

    def test_duplicate_is_audited(self, orchestrator, auditor_service, make_event, org_id, test_actor_id):
        orchestrator.post_event(make_event(), test_actor_id)
        orchestrator.post_event(make_event(), test_actor_id)
        assert len(auditor_service.get_events(org_id, AuditAction.DUPLICATE_SUPPRESSED)) == 1

    def test_external_reference_is_the_key(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(make_event(external_reference="INV-1001"), test_actor_id)
        assert result.event_ref == "api:INV-1001"

    def test_key_reuse_with_new_payload_conflicts(self, orchestrator, make_event, org_id, ledger_counts, test_actor_id):
        orchestrator.post_event(make_event(idempotency_key="k-1"), test_actor_id)
        result = orchestrator.post_event(make_event(amount="600.00", idempotency_key="k-1"), test_actor_id)

        assert result.status is PostingStatus.REJECTED
        assert result.error_code == "IdempotencyConflict"
        assert ledger_counts(org_id) == (1, 3, 1)

    def test_same_payload_different_orgs_post_twice(self, orchestrator, make_event, test_actor_id):
        first = orchestrator.post_event(make_event(idempotency_key="k-2"), test_actor_id)
        second = orchestrator.post_event(make_event(idempotency_key="k-2", organization_id=uuid4()), test_actor_id)
        assert second.status is PostingStatus.POSTED
        assert second.transaction_id != first.transaction_id


class TestRejections:
    def test_missing_rule(self, orchestrator, auditor_service, make_event, org_id, ledger_counts, test_actor_id):
        result = orchestrator.post_event(make_event("SALON.FINANCE.EXPENSE.MARKETING.v1", "300.00"), test_actor_id)

        assert result.error_code == "MissingPostingConfiguration"
        assert ledger_counts(org_id) == (0, 0, 0)
        rejected = auditor_service.get_events(org_id, AuditAction.POSTING_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].payload["error_code"] == "MissingPostingConfiguration"
        assert rejected[0].payload["amount"] == "300.00"

    def test_future_date(self, orchestrator, make_event, org_id, ledger_counts, test_actor_id):
        result = orchestrator.post_event(make_event(transaction_date=date(2025, 12, 1)), test_actor_id)
        assert result.error_code == "FuturePeriodRejected"
        assert ledger_counts(org_id) == (0, 0, 0)

    def test_closed_period(self, orchestrator, make_event, org_id, test_actor_id):
        orchestrator.period_service.create_period(org_id, "2025-09")
        assert orchestrator.close_period(org_id, "2025-09", test_actor_id).success

        result = orchestrator.post_event(make_event(transaction_date=date(2025, 9, 20)), test_actor_id)
        assert result.error_code == "PeriodClosed"

    def test_negative_amount(self, orchestrator, make_event, org_id, ledger_counts, test_actor_id):
        result = orchestrator.post_event(make_event(amount="-5.00"), test_actor_id)
        assert result.error_code == "SchemaViolation"
        assert [v.field for v in result.violations] == ["total_amount"]
        assert ledger_counts(org_id) == (0, 0, 0)

    def test_base_currency_must_match_profile(self, orchestrator, make_event, test_actor_id):
        result = orchestrator.post_event(make_event(currency="USD", base_currency="USD"), test_actor_id)
        assert result.error_code == "SchemaViolation"
        assert result.violations[0].field == "base_currency"

    def test_rejection_result_shape(self, orchestrator, make_event, test_actor_id):
        data = orchestrator.post_event(make_event(amount="0"), test_actor_id).to_dict()
        assert data["success"] is False
        assert data["status"] == "rejected"
        assert data["error"]["code"] == "SchemaViolation"
        assert data["lines"] == []

    def test_rejection_logged(self, orchestrator, make_event, captured_logs, test_actor_id):
        orchestrator.post_event(make_event(transaction_date=date(2026, 3, 1)), test_actor_id)
        rejected = [r for r in captured_logs() if r["message"] == "posting_rejected"]
        assert rejected and rejected[0]["error_code"] == "FuturePeriodRejected"


class TestDryRun:
    def test_returns_lines_and_persists_nothing(
        self, orchestrator, auditor_service, make_event, org_id, ledger_counts, test_actor_id
    ):
        result = orchestrator.post_event(make_event(), test_actor_id, dry_run=True)

        assert result.status is PostingStatus.DRY_RUN
        assert result.success and result.transaction is None
        assert [(line["account_code"], line["debit"], line["credit"]) for line in result.lines] == [
            ("1100", "525.00", None),
            ("4100", None, "500.00"),
            ("2250", None, "25.00"),
        ]
        assert result.to_dict()["tax"]["tax"] == "25.00"
        assert ledger_counts(org_id) == (0, 0, 0)
        assert auditor_service.get_events(org_id) == []

    def test_dry_run_rejection_not_audited(self, orchestrator, auditor_service, make_event, org_id, test_actor_id):
        result = orchestrator.post_event(make_event(amount="0"), test_actor_id, dry_run=True)
        assert result.error_code == "SchemaViolation"
        assert auditor_service.get_events(org_id) == []

    def test_dry_run_then_post(self, orchestrator, make_event, test_actor_id):
        orchestrator.post_event(make_event(), test_actor_id, dry_run=True)
        result = orchestrator.post_event(make_event(), test_actor_id)
        assert result.status is PostingStatus.POSTED
        assert result.journal_number == "JE-2025-10-000001"

    def test_yen_tax_in_whole_units(self, orchestrator, make_event, test_actor_id):
        event = make_event(amount="1001", currency="JPY", base_currency="AED", exchange_rate="0.0245")
        result = orchestrator.post_event(event, test_actor_id, dry_run=True)

        assert result.success
        assert result.to_dict()["tax"]["tax"] == "48"
        assert [(line["account_code"], line["debit"], line["credit"]) for line in result.lines] == [
            ("1100", "1001", None),
            ("4100", None, "953"),
            ("2250", None, "48"),
        ]


class TestTransientFailures:
    def test_retried_then_posted(self, orchestrator, make_event, monkeypatch, test_actor_id):
        persist = orchestrator.journal_writer.persist
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise TransientStorageError("database is locked")
            return persist(*args, **kwargs)

        monkeypatch.setattr(orchestrator.journal_writer, "persist", flaky)
        result = orchestrator.post_event(make_event(), test_actor_id)

        assert result.status is PostingStatus.POSTED
        assert len(calls) == 2

    def test_exhausted_is_reported_not_audited(
        self, orchestrator, auditor_service, make_event, org_id, ledger_counts, monkeypatch, test_actor_id
    ):
        def down(*args, **kwargs):
            raise TransientStorageError("connection refused")

        monkeypatch.setattr(orchestrator.journal_writer, "persist", down)
        result = orchestrator.post_event(make_event(), test_actor_id)

        assert result.error_code == "RetryExhausted"
        assert ledger_counts(org_id) == (0, 0, 0)
        assert auditor_service.get_events(org_id) == []
