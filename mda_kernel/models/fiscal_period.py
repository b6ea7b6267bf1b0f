"""
Module: mda_kernel.models.fiscal_period
Responsibility: ORM persistence for per-organization monthly fiscal periods.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per (organization_id, period_code); the unique constraint is
      what lets concurrent first-touch creators converge on a single record.
    - Status changes are guarded by a row lock plus version_id optimistic
      versioning, so two concurrent closers (or reopeners) cannot both win.

Failure modes:
    - IntegrityError on a duplicate (organization_id, period_code) insert;
      PeriodService turns that into a re-read.
    - StaleDataError when an UPDATE races with another writer.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mda_kernel.db.base import TrackedBase, UUIDString


class PeriodStatus(str, Enum):
    """
    Fiscal period lifecycle states.

    FUTURE_BLOCKED periods are pre-created placeholders that refuse postings.
    OPEN and CURRENT accept postings; CURRENT marks a period created on first
    touch by the posting path.  CLOSED refuses postings until an explicit,
    audited reopen returns the period to OPEN.
    """

    FUTURE_BLOCKED = "future_blocked"
    OPEN = "open"
    CURRENT = "current"
    CLOSED = "closed"

    @property
    def is_postable(self) -> bool:
        return self in (PeriodStatus.OPEN, PeriodStatus.CURRENT)


class FiscalPeriod(TrackedBase):
    """
    One accounting month for one organization.

    Contract:
        Rows are created lazily by the posting path (status CURRENT) or
        explicitly by period administration.  Only the status and the
        close/reopen stamps ever change after insert.
    """

    __tablename__ = "fiscal_periods"

    __table_args__ = (
        UniqueConstraint("organization_id", "period_code", name="uq_fiscal_period_org_code"),
        Index("idx_fiscal_period_org_dates", "organization_id", "start_date", "end_date"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # YYYY-MM
    period_code: Mapped[str] = mapped_column(String(7), nullable=False)

    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PeriodStatus.CURRENT,
    )

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    reopened_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reopen_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.organization_id}:{self.period_code} [{self.status}]>"

    @property
    def period_status(self) -> PeriodStatus:
        return PeriodStatus(self.status)

    @property
    def is_closed(self) -> bool:
        return self.period_status == PeriodStatus.CLOSED

    @property
    def is_postable(self) -> bool:
        return self.period_status.is_postable

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date
