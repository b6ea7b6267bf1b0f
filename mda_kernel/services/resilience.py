"""
RetryPolicy -- bounded retry with deadline for storage calls.

Responsibility:
    Wraps a storage operation so that transient failures (dropped
    connections, timeouts, ``TransientStorageError``) are retried with
    exponential backoff and deterministic jitter, while every other error
    propagates on the first attempt.

Architecture position:
    Kernel > Services.  A wrapper around storage calls, never business
    logic: the orchestrator passes it closures that touch the database.

Backoff:
    delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) + jitter(n)
    jitter(n) is derived from SHA-1(operation:n), so the same operation
    retries on the same schedule in every run.

Failure modes:
    - RetryExhaustedError carrying the last error once ``max_attempts`` is
      reached or the next sleep would cross the ``timeout`` deadline.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from mda_kernel.exceptions import RetryExhaustedError, TransientStorageError
from mda_kernel.logging_config import get_logger

logger = get_logger("services.resilience")

T = TypeVar("T")


# Driver messages that mean "try again", not "your SQL is wrong"
_TRANSIENT_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize",
    "server closed the connection",
    "connection refused",
    "timeout",
)


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying; validation and invariant errors never are."""
    if isinstance(exc, (TransientStorageError, TimeoutError, ConnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if isinstance(exc, OperationalError):
            message = str(exc.orig or exc).lower()
            return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration plus the loop that applies it.

    ``sleep`` and ``clock`` are injectable so tests run without waiting.
    ``clock`` returns monotonic seconds.
    """

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    timeout: float = 5.0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0 or self.timeout <= 0:
            raise ValueError("delays must be non-negative and timeout positive")

    def delay_for(self, attempt: int, operation: str = "") -> float:
        backoff = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        digest = hashlib.sha1(f"{operation}:{attempt}".encode("utf-8")).hexdigest()
        # Jitter of up to a fifth of the backoff
        jitter = (int(digest[:8], 16) / 0xFFFFFFFF) * backoff / 5
        return round(backoff + jitter, 6)

    def call(self, fn: Callable[[], T], operation: str = "storage") -> T:
        deadline = self.clock() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if not is_transient(exc):
                    raise
                delay = self.delay_for(attempt, operation)
                logger.warning(
                    "retry_attempt_failed",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                        "next_delay": delay,
                    },
                )
                if attempt >= self.max_attempts or self.clock() + delay > deadline:
                    logger.error(
                        "retry_exhausted",
                        extra={"operation": operation, "attempts": attempt},
                    )
                    raise RetryExhaustedError(operation, attempt, exc) from exc
                self.sleep(delay)


NO_RETRY = RetryPolicy(max_attempts=1)
