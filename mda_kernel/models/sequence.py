"""
Module: mda_kernel.models.sequence
Responsibility: Named monotonic counters backing audit sequence numbers and
    per-period journal numbers.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from mda_kernel.db.base import Base


class SequenceCounter(Base):
    """One named counter; the row is locked while a value is allocated."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
