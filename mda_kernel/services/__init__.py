"""Services for the posting kernel (write side)."""

from mda_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from mda_kernel.services.journal_writer import (
    JournalWriter,
    PostedLineInfo,
    PostedTransactionInfo,
)
from mda_kernel.services.period_service import (
    FiscalPeriodInfo,
    PeriodCheck,
    PeriodService,
)
from mda_kernel.services.resilience import NO_RETRY, RetryPolicy, is_transient
from mda_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditorService",
    "FiscalPeriodInfo",
    "JournalWriter",
    "NO_RETRY",
    "PeriodCheck",
    "PeriodService",
    "PostedLineInfo",
    "PostedTransactionInfo",
    "RetryPolicy",
    "SYSTEM_ACTOR_ID",
    "SequenceService",
    "is_transient",
]
