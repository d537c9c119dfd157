import asyncio

import pytest

from programme_scout.core.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, exc: type[Exception] = RuntimeError) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


def test_retries_until_success() -> None:
    flaky = Flaky(failures=2)
    policy = RetryPolicy(max_attempts=3, backoff_seconds=0)
    assert asyncio.run(policy.call("flaky", flaky)) == "ok"
    assert flaky.calls == 3


def test_last_error_is_reraised_after_final_attempt() -> None:
    flaky = Flaky(failures=5)
    policy = RetryPolicy(max_attempts=2, backoff_seconds=0)
    with pytest.raises(RuntimeError, match="failure 2"):
        asyncio.run(policy.call("flaky", flaky))
    assert flaky.calls == 2


def test_only_listed_exceptions_are_retried() -> None:
    flaky = Flaky(failures=1, exc=KeyError)
    policy = RetryPolicy(max_attempts=3, backoff_seconds=0, retry_on=(RuntimeError,))
    with pytest.raises(KeyError):
        asyncio.run(policy.call("flaky", flaky))
    assert flaky.calls == 1


def test_with_attempts_keeps_backoff() -> None:
    policy = RetryPolicy(max_attempts=5, backoff_seconds=0.5, max_backoff_seconds=4.0).with_attempts(2)
    assert policy.max_attempts == 2
    assert policy.backoff_seconds == 0.5
    assert policy.max_backoff_seconds == 4.0
