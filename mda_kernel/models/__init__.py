"""ORM models.  Importing this package registers every table on Base.metadata."""

from mda_kernel.models.audit_event import AuditAction, AuditEvent
from mda_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from mda_kernel.models.sequence import SequenceCounter
from mda_kernel.models.transaction import GLLine, PostedTransaction

__all__ = [
    "AuditAction",
    "AuditEvent",
    "FiscalPeriod",
    "GLLine",
    "PeriodStatus",
    "PostedTransaction",
    "SequenceCounter",
]
