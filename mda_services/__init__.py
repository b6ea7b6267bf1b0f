"""
Services layer: the posting pipeline and its alternate entry points.

The orchestrator is the only place kernel services are constructed; the
POS end-of-day and natural-language services are built on top of it.
"""

from mda_services.natural_language_service import NaturalLanguageService, NlResult
from mda_services.pos_eod_service import PosEodService, PosSummaryResult
from mda_services.posting_orchestrator import (
    PeriodCloseResult,
    PostingOrchestrator,
    PostingResult,
    PostingStatus,
    TrialBalance,
)

__all__ = [
    "NaturalLanguageService",
    "NlResult",
    "PeriodCloseResult",
    "PosEodService",
    "PosSummaryResult",
    "PostingOrchestrator",
    "PostingResult",
    "PostingStatus",
    "TrialBalance",
]
