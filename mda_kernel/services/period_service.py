"""
PeriodService -- fiscal period gate and period administration.

Responsibility:
    First stage of every posting: decides whether an organization may post
    on a date.  Lazily creates the month's period on first touch, rejects
    dates beyond the posting horizon, and rejects closed and future-blocked
    periods.  Also provides the administrative create, close and reopen
    operations.

Architecture position:
    Kernel > Services.  Knows nothing about amounts or rules.

State machine:
    future_blocked   not postable (FuturePeriodRejected)
    open / current   postable
    closed           not postable (PeriodClosed); reopen returns it to open

Invariants enforced:
    - One period per (organization, YYYY-MM).  Creation is an atomic
      create-if-absent: the insert runs in a savepoint and a unique
      violation means another request created it first, so we re-read.
    - Status changes take a row lock (SELECT ... FOR UPDATE) and bump the
      optimistic version, so concurrent closes (or reopens) cannot both
      succeed.
    - Horizon = last day of the current month (injected Clock) plus
      ``future_grace_days``.

Failure modes:
    - FuturePeriodRejectedError, PeriodClosedError from the gate.
    - PeriodNotFoundError, PeriodAlreadyClosedError from close_period.
    - PeriodNotFoundError, PeriodNotClosedError from reopen_period.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from mda_kernel.domain.clock import Clock
from mda_kernel.exceptions import (
    EventValidationError,
    FuturePeriodRejectedError,
    MdaError,
    PeriodAlreadyClosedError,
    PeriodClosedError,
    PeriodNotClosedError,
    PeriodNotFoundError,
    SchemaViolation,
)
from mda_kernel.logging_config import get_logger
from mda_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from mda_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from mda_kernel.services.base import BaseService

logger = get_logger("services.period")

DEFAULT_FUTURE_GRACE_DAYS = 7

_PERIOD_CODE = re.compile(r"^(?P<y>\d{4})-(?P<m>0[1-9]|1[0-2])$")


# =============================================================================
# Pure period arithmetic
# =============================================================================


def period_code_for(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def period_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def parse_period_code(period_code: str) -> tuple[int, int]:
    match = _PERIOD_CODE.match(period_code or "")
    if not match:
        raise ValueError(f"Period code must be YYYY-MM: {period_code!r}")
    return int(match.group("y")), int(match.group("m"))


def fiscal_year_for(value: date, start_month: int = 1) -> int:
    """
    Fiscal year containing *value*.

    A fiscal year starting in January is the calendar year.  Otherwise it is
    named by the calendar year in which it ends: with start_month=4,
    2025-04-01 .. 2026-03-31 is fiscal year 2026.
    """
    if not 1 <= start_month <= 12:
        raise ValueError(f"start_month must be 1..12: {start_month}")
    if start_month == 1:
        return value.year
    return value.year + 1 if value.month >= start_month else value.year


def posting_horizon(today: date, grace_days: int = DEFAULT_FUTURE_GRACE_DAYS) -> date:
    """Latest date that may be posted as of *today*."""
    _, month_end = period_bounds(today.year, today.month)
    return month_end + timedelta(days=grace_days)


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class FiscalPeriodInfo:
    id: UUID
    organization_id: UUID
    period_code: str
    fiscal_year: int
    start_date: date
    end_date: date
    status: PeriodStatus

    @classmethod
    def from_model(cls, period: FiscalPeriod) -> FiscalPeriodInfo:
        return cls(
            id=period.id,
            organization_id=period.organization_id,
            period_code=period.period_code,
            fiscal_year=period.fiscal_year,
            start_date=period.start_date,
            end_date=period.end_date,
            status=PeriodStatus(period.status),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "period_code": self.period_code,
            "fiscal_year": self.fiscal_year,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class PeriodCheck:
    """Answer to "may this organization post on this date?"."""

    can_post: bool
    period: FiscalPeriodInfo | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        error = None
        if self.error_code:
            error = {"code": self.error_code, "message": self.error_message}
        return {
            "can_post": self.can_post,
            "period": self.period.to_dict() if self.period else None,
            "error": error,
        }


# =============================================================================
# Service
# =============================================================================


class PeriodService(BaseService):
    """
    Fiscal period gate.

    Contract:
        ``ensure_postable`` returns the ORM period a transaction will point
        at, or raises a typed error.  ``validate_for_posting`` wraps it into
        a ``PeriodCheck`` and never raises for business failures.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        future_grace_days: int = DEFAULT_FUTURE_GRACE_DAYS,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self._clock)
        self._future_grace_days = future_grace_days

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def ensure_postable(
        self,
        organization_id: UUID,
        transaction_date: date,
        *,
        fiscal_year_start_month: int = 1,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> FiscalPeriod:
        period_code = period_code_for(transaction_date)

        horizon = posting_horizon(self._clock.today(), self._future_grace_days)
        if transaction_date > horizon:
            logger.warning(
                "future_period_rejected",
                extra={"period_code": period_code, "horizon": horizon.isoformat()},
            )
            raise FuturePeriodRejectedError(
                transaction_date.isoformat(), horizon.isoformat(), period_code
            )

        period = self._get_or_create(
            organization_id,
            period_code,
            status=PeriodStatus.CURRENT,
            fiscal_year_start_month=fiscal_year_start_month,
            actor_id=actor_id,
        )

        status = PeriodStatus(period.status)
        if status is PeriodStatus.CLOSED:
            logger.warning("period_closed_violation", extra={"period_code": period_code})
            raise PeriodClosedError(period_code, transaction_date.isoformat())
        if status is PeriodStatus.FUTURE_BLOCKED:
            logger.warning("future_blocked_violation", extra={"period_code": period_code})
            raise FuturePeriodRejectedError(transaction_date.isoformat(), None, period_code)
        return period

    def validate_for_posting(
        self,
        organization_id: UUID,
        transaction_date: date,
        *,
        fiscal_year_start_month: int = 1,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> PeriodCheck:
        try:
            period = self.ensure_postable(
                organization_id,
                transaction_date,
                fiscal_year_start_month=fiscal_year_start_month,
                actor_id=actor_id,
            )
        except (FuturePeriodRejectedError, PeriodClosedError) as exc:
            existing = self._get(organization_id, exc.period_code)
            return PeriodCheck(
                can_post=False,
                period=FiscalPeriodInfo.from_model(existing) if existing else None,
                error_code=exc.code,
                error_message=exc.message,
            )
        return PeriodCheck(can_post=True, period=FiscalPeriodInfo.from_model(period))

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_period(
        self,
        organization_id: UUID,
        period_code: str,
        *,
        status: PeriodStatus = PeriodStatus.OPEN,
        fiscal_year_start_month: int = 1,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> FiscalPeriodInfo:
        """Create a period explicitly; returns the existing one if present."""
        parse_period_code(period_code)
        period = self._get_or_create(
            organization_id,
            period_code,
            status=status,
            fiscal_year_start_month=fiscal_year_start_month,
            actor_id=actor_id,
        )
        return FiscalPeriodInfo.from_model(period)

    def close_period(self, organization_id: UUID, period_code: str, actor_id: UUID) -> FiscalPeriodInfo:
        """
        Close a period.  Only an explicit reopen_period undoes it.

        Raises:
            PeriodNotFoundError: no such period.
            PeriodAlreadyClosedError: already closed, or a concurrent closer
                won the optimistic version check.
        """
        savepoint = self.session.begin_nested()
        try:
            period = self._get_for_update(organization_id, period_code)
            if period is None:
                raise PeriodNotFoundError(period_code)
            if period.is_closed:
                raise PeriodAlreadyClosedError(period_code)

            period.status = PeriodStatus.CLOSED.value
            period.closed_at = self._clock.now()
            period.closed_by_id = actor_id
            period.updated_by_id = actor_id
            self.session.flush()
            savepoint.commit()
        except StaleDataError:
            savepoint.rollback()
            logger.warning("concurrent_period_close_conflict", extra={"period_code": period_code})
            raise PeriodAlreadyClosedError(period_code) from None
        except MdaError:
            savepoint.rollback()
            raise

        self._auditor.record_period_closed(period.id, organization_id, period_code, actor_id)
        logger.info("period_closed", extra={"period_code": period_code})
        return FiscalPeriodInfo.from_model(period)

    def reopen_period(
        self, organization_id: UUID, period_code: str, actor_id: UUID, reason: str
    ) -> FiscalPeriodInfo:
        """
        Return a closed period to OPEN so corrections can be posted.

        The reason is mandatory and lands on the row and in the audit
        trail; the previous close stamps are cleared.

        Raises:
            EventValidationError: blank reason.
            PeriodNotFoundError: no such period.
            PeriodNotClosedError: the period is not closed, or a concurrent
                reopener won the optimistic version check.
        """
        reason = (reason or "").strip()[:500]
        if not reason:
            raise EventValidationError([SchemaViolation("reason", "required to reopen a period")])

        savepoint = self.session.begin_nested()
        try:
            period = self._get_for_update(organization_id, period_code)
            if period is None:
                raise PeriodNotFoundError(period_code)
            if not period.is_closed:
                raise PeriodNotClosedError(period_code, period.status)

            period.status = PeriodStatus.OPEN.value
            period.closed_at = None
            period.closed_by_id = None
            period.reopened_at = self._clock.now()
            period.reopened_by_id = actor_id
            period.reopen_reason = reason
            period.updated_by_id = actor_id
            self.session.flush()
            savepoint.commit()
        except StaleDataError:
            savepoint.rollback()
            logger.warning("concurrent_period_reopen_conflict", extra={"period_code": period_code})
            raise PeriodNotClosedError(period_code, PeriodStatus.OPEN.value) from None
        except MdaError:
            savepoint.rollback()
            raise

        self._auditor.record_period_reopened(period.id, organization_id, period_code, reason, actor_id)
        logger.warning("period_reopened", extra={"period_code": period_code, "reason": reason})
        return FiscalPeriodInfo.from_model(period)

    def get_period(self, organization_id: UUID, period_code: str) -> FiscalPeriodInfo | None:
        period = self._get(organization_id, period_code)
        return FiscalPeriodInfo.from_model(period) if period else None

    def list_periods(self, organization_id: UUID) -> list[FiscalPeriodInfo]:
        periods = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.organization_id == organization_id)
            .order_by(FiscalPeriod.period_code)
        ).scalars()
        return [FiscalPeriodInfo.from_model(p) for p in periods]

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _get(self, organization_id: UUID, period_code: str) -> FiscalPeriod | None:
        return self.session.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.period_code == period_code,
            )
        ).scalar_one_or_none()

    def _get_for_update(self, organization_id: UUID, period_code: str) -> FiscalPeriod | None:
        return self.session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.period_code == period_code,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _get_or_create(
        self,
        organization_id: UUID,
        period_code: str,
        *,
        status: PeriodStatus,
        fiscal_year_start_month: int,
        actor_id: UUID,
    ) -> FiscalPeriod:
        period = self._get(organization_id, period_code)
        if period is not None:
            return period
        return self._insert_or_get(
            organization_id,
            period_code,
            status=status,
            fiscal_year_start_month=fiscal_year_start_month,
            actor_id=actor_id,
        )

    def _insert_or_get(
        self,
        organization_id: UUID,
        period_code: str,
        *,
        status: PeriodStatus,
        fiscal_year_start_month: int,
        actor_id: UUID,
    ) -> FiscalPeriod:
        """Atomic create-if-absent; a lost race re-reads the winner's row."""
        year, month = parse_period_code(period_code)
        start_date, end_date = period_bounds(year, month)

        savepoint = self.session.begin_nested()
        try:
            period = FiscalPeriod(
                organization_id=organization_id,
                period_code=period_code,
                fiscal_year=fiscal_year_for(start_date, fiscal_year_start_month),
                start_date=start_date,
                end_date=end_date,
                status=status.value,
                created_by_id=actor_id,
            )
            self.session.add(period)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info("period_create_race_resolved", extra={"period_code": period_code})
            existing = self._get(organization_id, period_code)
            if existing is None:
                raise
            return existing

        logger.info("period_created", extra={"period_code": period_code, "status": status.value})
        self._auditor.record_period_created(
            period.id, organization_id, period_code, status.value, actor_id
        )
        return period
