"""
RetryPolicy: transient failures retry, everything else fails fast.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from mda_kernel.exceptions import EventValidationError, RetryExhaustedError, SchemaViolation, TransientStorageError
from mda_kernel.services.resilience import NO_RETRY, RetryPolicy, is_transient


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def _policy(fake_clock, **overrides) -> RetryPolicy:
    values = {"max_attempts": 3, "base_delay": 0.1, "max_delay": 1.0, "timeout": 5.0}
    values.update(overrides)
    return RetryPolicy(sleep=fake_clock.sleep, clock=fake_clock, **values)


def _flaky(failures: int, exc: Exception):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc
        return "ok"

    return fn, calls


class TestClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            TransientStorageError("lost connection"),
            TimeoutError(),
            ConnectionError(),
            OperationalError("SELECT 1", {}, Exception("database is locked")),
            OperationalError("SELECT 1", {}, Exception("could not serialize access")),
            OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout")),
        ],
    )
    def test_transient(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            EventValidationError([SchemaViolation("total_amount", "must be positive")]),
            IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")),
            OperationalError("SELECT 1", {}, Exception("no such table: x")),
            ValueError("bad"),
        ],
    )
    def test_not_transient(self, exc):
        assert not is_transient(exc)


class TestCall:
    def test_success_first_try(self, fake_clock):
        fn, calls = _flaky(0, TransientStorageError("x"))
        assert _policy(fake_clock).call(fn) == "ok"
        assert calls["n"] == 1
        assert fake_clock.sleeps == []

    def test_transient_then_success(self, fake_clock):
        fn, calls = _flaky(2, TransientStorageError("x"))
        assert _policy(fake_clock).call(fn, operation="post_event") == "ok"
        assert calls["n"] == 3
        assert len(fake_clock.sleeps) == 2

    def test_exhausted(self, fake_clock, captured_logs):
        fn, calls = _flaky(5, TransientStorageError("still down"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            _policy(fake_clock).call(fn, operation="post_event")

        assert calls["n"] == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientStorageError)
        assert exc_info.value.category == "transient"
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("retry_attempt_failed") == 3
        assert "retry_exhausted" in messages

    def test_non_transient_raises_immediately(self, fake_clock):
        fn, calls = _flaky(1, ValueError("bug"))
        with pytest.raises(ValueError):
            _policy(fake_clock).call(fn)
        assert calls["n"] == 1

    def test_deadline_stops_early(self, fake_clock):
        fn, calls = _flaky(10, TransientStorageError("x"))
        policy = _policy(fake_clock, max_attempts=10, base_delay=1.0, max_delay=4.0, timeout=3.0)
        with pytest.raises(RetryExhaustedError):
            policy.call(fn)
        assert sum(fake_clock.sleeps) <= 3.0
        assert calls["n"] < 10

    def test_no_retry(self):
        fn, calls = _flaky(1, TransientStorageError("x"))
        with pytest.raises(RetryExhaustedError):
            NO_RETRY.call(fn)
        assert calls["n"] == 1


class TestDelays:
    def test_deterministic(self, fake_clock):
        policy = _policy(fake_clock)
        assert policy.delay_for(2, "post_event") == policy.delay_for(2, "post_event")

    def test_exponential_with_bounded_jitter(self, fake_clock):
        policy = _policy(fake_clock)
        for attempt, backoff in ((1, 0.1), (2, 0.2), (3, 0.4)):
            delay = policy.delay_for(attempt, "post_event")
            assert backoff <= delay <= backoff * 1.2 + 1e-6

    def test_capped(self, fake_clock):
        policy = _policy(fake_clock, max_delay=0.5)
        assert policy.delay_for(10, "x") <= 0.6 + 1e-6

    @pytest.mark.parametrize(
        "overrides",
        [{"max_attempts": 0}, {"base_delay": -1}, {"timeout": 0}],
    )
    def test_invalid_settings(self, fake_clock, overrides):
        with pytest.raises(ValueError):
            _policy(fake_clock, **overrides)
