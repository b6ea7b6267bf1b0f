"""
BaseService -- common constructor and session contract for kernel services.

Services receive a SQLAlchemy ``Session`` from the caller and persist with
``session.flush()`` only.  They never commit or roll back the outer
transaction; the caller (PostingOrchestrator, a script using
``session_scope()``, or the test harness) owns that boundary.  Nested
savepoints opened by a service are the service's own business.
"""

from abc import ABC

from sqlalchemy.orm import Session

from mda_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Guarantees:
        - Never calls ``session.commit()`` on the caller's transaction.
        - Reads the current time only through the injected Clock.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()
