"""
Fiscal period gate.

Verifies:
- period arithmetic (codes, bounds, fiscal years, posting horizon)
- periods are created lazily on first posting, exactly once
- closed and future-blocked periods reject posting
- closing is audited; only an explicit, audited reopen undoes it
"""

from datetime import date
from uuid import uuid4

import pytest

from mda_kernel.exceptions import (
    EventValidationError,
    FuturePeriodRejectedError,
    PeriodAlreadyClosedError,
    PeriodClosedError,
    PeriodNotClosedError,
    PeriodNotFoundError,
)
from mda_kernel.models.audit_event import AuditAction
from mda_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from mda_kernel.services.period_service import (
    fiscal_year_for,
    parse_period_code,
    period_bounds,
    period_code_for,
    posting_horizon,
)


class TestPeriodArithmetic:
    def test_code(self):
        assert period_code_for(date(2025, 3, 9)) == "2025-03"

    def test_bounds_leap_year(self):
        assert period_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))

    @pytest.mark.parametrize("code", ["2025-13", "2025-1", "25-01", ""])
    def test_bad_code(self, code):
        with pytest.raises(ValueError):
            parse_period_code(code)

    def test_calendar_fiscal_year(self):
        assert fiscal_year_for(date(2025, 10, 5)) == 2025

    def test_april_fiscal_year(self):
        assert fiscal_year_for(date(2025, 3, 31), 4) == 2025
        assert fiscal_year_for(date(2025, 4, 1), 4) == 2026

    def test_horizon_is_month_end_plus_grace(self):
        assert posting_horizon(date(2025, 10, 15), 7) == date(2025, 11, 7)
        assert posting_horizon(date(2025, 12, 31), 0) == date(2025, 12, 31)


class TestEnsurePostable:
    def test_creates_current_period_lazily(self, period_service, org_id, session):
        period = period_service.ensure_postable(org_id, date(2025, 10, 5))
        assert period.period_code == "2025-10"
        assert period.status == PeriodStatus.CURRENT.value
        assert (period.start_date, period.end_date) == (date(2025, 10, 1), date(2025, 10, 31))
        assert session.query(FiscalPeriod).filter_by(organization_id=org_id).count() == 1

    def test_second_call_reuses_period(self, period_service, org_id):
        first = period_service.ensure_postable(org_id, date(2025, 10, 5))
        second = period_service.ensure_postable(org_id, date(2025, 10, 20))
        assert first.id == second.id

    def test_fiscal_year_from_profile(self, period_service, org_id):
        period = period_service.ensure_postable(org_id, date(2025, 10, 5), fiscal_year_start_month=4)
        assert period.fiscal_year == 2026

    def test_next_month_within_grace(self, period_service, org_id):
        assert period_service.ensure_postable(org_id, date(2025, 11, 7)).period_code == "2025-11"

    def test_beyond_horizon_rejected_without_creating(self, period_service, org_id, session):
        with pytest.raises(FuturePeriodRejectedError) as exc_info:
            period_service.ensure_postable(org_id, date(2025, 11, 8))
        assert exc_info.value.horizon == "2025-11-07"
        assert session.query(FiscalPeriod).filter_by(organization_id=org_id).count() == 0

    def test_past_period_is_open(self, period_service, org_id):
        assert period_service.ensure_postable(org_id, date(2024, 1, 15)).period_code == "2024-01"

    def test_closed_period_rejected(self, period_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        with pytest.raises(PeriodClosedError) as exc_info:
            period_service.ensure_postable(org_id, date(2025, 9, 30))
        assert exc_info.value.period_code == "2025-09"

    def test_future_blocked_period_rejected(self, period_service, org_id):
        period_service.create_period(org_id, "2025-10", status=PeriodStatus.FUTURE_BLOCKED)
        with pytest.raises(FuturePeriodRejectedError) as exc_info:
            period_service.ensure_postable(org_id, date(2025, 10, 5))
        assert exc_info.value.horizon is None


class TestValidateForPosting:
    def test_can_post(self, period_service, org_id):
        check = period_service.validate_for_posting(org_id, date(2025, 10, 5))
        assert check.can_post
        assert check.to_dict()["period"]["period_code"] == "2025-10"
        assert check.to_dict()["error"] is None

    def test_cannot_post_future(self, period_service, org_id):
        check = period_service.validate_for_posting(org_id, date(2026, 1, 1))
        assert not check.can_post
        assert check.period is None
        assert check.error_code == "FuturePeriodRejected"

    def test_cannot_post_closed(self, period_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-08")
        period_service.close_period(org_id, "2025-08", test_actor_id)
        check = period_service.validate_for_posting(org_id, date(2025, 8, 1))
        assert not check.can_post
        assert check.period.status is PeriodStatus.CLOSED
        assert check.error_code == "PeriodClosed"


class TestClosePeriod:
    def test_close_is_audited(self, period_service, auditor_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        info = period_service.close_period(org_id, "2025-09", test_actor_id)
        assert info.status is PeriodStatus.CLOSED
        closed = auditor_service.get_events(org_id, AuditAction.PERIOD_CLOSED)
        assert len(closed) == 1
        assert closed[0].payload == {"period_code": "2025-09"}

    def test_close_twice(self, period_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        with pytest.raises(PeriodAlreadyClosedError):
            period_service.close_period(org_id, "2025-09", test_actor_id)

    def test_close_unknown(self, period_service, org_id, test_actor_id):
        with pytest.raises(PeriodNotFoundError):
            period_service.close_period(org_id, "2025-01", test_actor_id)

    def test_periods_are_per_organization(self, period_service, org_id, test_actor_id):
        other = uuid4()
        period_service.create_period(org_id, "2025-09")
        period_service.create_period(other, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        assert period_service.get_period(other, "2025-09").status is PeriodStatus.OPEN

    def test_list_periods_sorted(self, period_service, org_id):
        period_service.create_period(org_id, "2025-10")
        period_service.create_period(org_id, "2025-08")
        assert [p.period_code for p in period_service.list_periods(org_id)] == ["2025-08", "2025-10"]


class TestReopenPeriod:
    def test_reopen_returns_period_to_open(self, period_service, org_id, session, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        row = session.query(FiscalPeriod).filter_by(organization_id=org_id, period_code="2025-09").one()
        closed_version = row.version_id
        info = period_service.reopen_period(org_id, "2025-09", test_actor_id, "late supplier invoice")
        assert info.status is PeriodStatus.OPEN

        assert row.closed_at is None
        assert row.reopened_by_id == test_actor_id
        assert row.reopen_reason == "late supplier invoice"
        assert row.version_id == closed_version + 1

    def test_reopen_is_audited_with_reason(self, period_service, auditor_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        period_service.reopen_period(org_id, "2025-09", test_actor_id, "late supplier invoice")
        reopened = auditor_service.get_events(org_id, AuditAction.PERIOD_REOPENED)
        assert len(reopened) == 1
        assert reopened[0].payload == {"period_code": "2025-09", "reason": "late supplier invoice"}
        assert reopened[0].severity == "warning"

    def test_reopened_period_accepts_postings(self, period_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        period_service.reopen_period(org_id, "2025-09", test_actor_id, "correction")
        assert period_service.ensure_postable(org_id, date(2025, 9, 20)).period_code == "2025-09"

    def test_close_again_after_reopen(self, period_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        period_service.reopen_period(org_id, "2025-09", test_actor_id, "correction")
        assert period_service.close_period(org_id, "2025-09", test_actor_id).status is PeriodStatus.CLOSED

    def test_reopen_open_period(self, period_service, auditor_service, org_id, test_actor_id):
        period_service.create_period(org_id, "2025-09")
        with pytest.raises(PeriodNotClosedError):
            period_service.reopen_period(org_id, "2025-09", test_actor_id, "correction")
        assert auditor_service.get_events(org_id, AuditAction.PERIOD_REOPENED) == []

    def test_reopen_unknown(self, period_service, org_id, test_actor_id):
        with pytest.raises(PeriodNotFoundError):
            period_service.reopen_period(org_id, "2025-01", test_actor_id, "correction")

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reason_required(self, period_service, org_id, test_actor_id, reason):
        period_service.create_period(org_id, "2025-09")
        period_service.close_period(org_id, "2025-09", test_actor_id)
        with pytest.raises(EventValidationError) as exc_info:
            period_service.reopen_period(org_id, "2025-09", test_actor_id, reason)
        assert exc_info.value.field == "reason"
        assert period_service.get_period(org_id, "2025-09").status is PeriodStatus.CLOSED


class TestCreateRace:
    def test_lost_insert_race_reads_winner(self, period_service, org_id, session, captured_logs):
        winner = period_service.create_period(org_id, "2025-10")
        # Simulates a concurrent creator: the row exists but the read before insert missed it
        period = period_service._insert_or_get(
            org_id,
            "2025-10",
            status=PeriodStatus.CURRENT,
            fiscal_year_start_month=1,
            actor_id=uuid4(),
        )
        assert period.id == winner.id
        assert session.query(FiscalPeriod).filter_by(organization_id=org_id).count() == 1
        assert any(r["message"] == "period_create_race_resolved" for r in captured_logs())

    def test_creation_is_audited_once(self, period_service, auditor_service, org_id):
        period_service.ensure_postable(org_id, date(2025, 10, 1))
        period_service.ensure_postable(org_id, date(2025, 10, 2))
        created = auditor_service.get_events(org_id, AuditAction.PERIOD_CREATED)
        assert len(created) == 1
        assert created[0].payload["status"] == "current"
