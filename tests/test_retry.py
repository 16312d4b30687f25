import asyncio

import pytest

from bridge_scraper.engine import retry
from bridge_scraper.engine.errors import (
    ElementNotFound,
    NavigationFailed,
    RemoteCallTimedOut,
    RetriesExhausted,
    is_retryable,
)
from bridge_scraper.engine.retry import RetryExecutor, compute_backoff_ms


class Flaky:
    def __init__(self, failures, result="done"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_always_retryable_gives_up_after_three_retries(clock):
    op = Flaky([NavigationFailed("down")] * 10)

    with pytest.raises(RetriesExhausted) as exc:
        asyncio.run(RetryExecutor(clock=clock, label="probe").execute(op))

    assert op.calls == 4
    assert clock.sleeps == [1.0, 2.0, 4.0]
    assert exc.value.count == 3
    assert exc.value.phase == "probe"
    assert isinstance(exc.value.__cause__, NavigationFailed)
    assert exc.value.to_dict()["retries"] == 3


def test_non_retryable_error_propagates_unchanged(clock):
    error = ElementNotFound("no grid", phase="extract")
    op = Flaky([error])

    with pytest.raises(ElementNotFound) as exc:
        asyncio.run(RetryExecutor(clock=clock).execute(op))

    assert exc.value is error
    assert op.calls == 1
    assert clock.sleeps == []


def test_succeeds_after_transient_failures(clock):
    op = Flaky([RemoteCallTimedOut("slow"), NavigationFailed("blip")], result=[1, 2])

    assert asyncio.run(RetryExecutor(clock=clock).execute(op)) == [1, 2]
    assert op.calls == 3
    assert clock.sleeps == [1.0, 2.0]


def test_custom_predicate(clock):
    op = Flaky([KeyError("x")])

    result = asyncio.run(
        RetryExecutor(is_retryable=lambda e: isinstance(e, KeyError), clock=clock).execute(op)
    )

    assert result == "done"
    assert clock.sleeps == [1.0]


def test_plain_exceptions_are_not_retryable():
    assert not is_retryable(ValueError("x"))
    assert is_retryable(NavigationFailed("x"))
    assert not is_retryable(ElementNotFound("x"))


def test_module_level_execute(clock):
    op = Flaky([NavigationFailed("down")] * 3)

    with pytest.raises(RetriesExhausted):
        asyncio.run(retry.execute(op, max_retries=2, initial_backoff_ms=100, clock=clock))

    assert clock.sleeps == [0.1, 0.2]


def test_backoff_doubles():
    assert [compute_backoff_ms(i, 1000) for i in range(3)] == [1000, 2000, 4000]


def test_backoff_jitter_stays_in_bounds():
    for _ in range(50):
        delay = compute_backoff_ms(1, 1000, jitter_ratio=0.25)
        assert 2000 <= delay <= 2500
