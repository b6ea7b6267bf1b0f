"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Hands out strictly increasing numbers per named sequence: the audit
    chain's ``seq`` and the per-organization, per-period journal numbers.

Invariants enforced:
    - Values come from an incremented, row-locked counter, never from
      MAX(...)+1, so concurrent allocators never collide.
    - First use of a name is a create-if-absent: the insert runs in a
      savepoint, and an IntegrityError (a concurrent creator won) falls back
      to locking the winner's row.

Failure modes:
    - IntegrityError only if the fallback read also fails, which means the
      row vanished mid-transaction.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mda_kernel.logging_config import get_logger
from mda_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """Allocates sequence values inside the caller's transaction."""

    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def journal_sequence_name(organization_id, period_code: str) -> str:
        return f"journal:{organization_id}:{period_code}"

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock (or create) the named counter, increment it and return the value.

        The increment is only durable when the caller commits; a rollback
        returns the value to the pool.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": 1})
                return 1
            except IntegrityError:
                savepoint.rollback()
                logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
