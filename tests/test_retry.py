"""Tests for the bounded retry combinator."""

from __future__ import annotations

import pytest

from phasegate.retry import RetryPolicy, run_with_retry

pytestmark = pytest.mark.unit


def test_max_attempts_is_retries_plus_one() -> None:
    assert RetryPolicy(max_retries=0).max_attempts == 1
    assert RetryPolicy(max_retries=3).max_attempts == 4


def test_backoff_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(max_retries=5, backoff_seconds=1.0, multiplier=3.0, max_backoff_seconds=5.0)

    assert [policy.delay_before(n) for n in range(1, 5)] == [0.0, 1.0, 3.0, 5.0]


def test_run_with_retry_stops_when_should_retry_is_false() -> None:
    calls: list[int] = []

    result = run_with_retry(
        lambda attempt: calls.append(attempt) or attempt,
        policy=RetryPolicy(max_retries=5),
        should_retry=lambda value: value < 2,
        sleep=lambda _s: None,
    )

    assert result == 2
    assert calls == [1, 2]


def test_run_with_retry_always_terminates() -> None:
    sleeps: list[float] = []

    result = run_with_retry(
        lambda attempt: attempt,
        policy=RetryPolicy(max_retries=2, backoff_seconds=0.5),
        should_retry=lambda _value: True,
        sleep=sleeps.append,
    )

    assert result == 3
    assert sleeps == [0.5, 1.0]


def test_run_with_retry_propagates_operation_errors() -> None:
    def boom(_attempt: int) -> int:
        raise RuntimeError("unsafe")

    with pytest.raises(RuntimeError, match="unsafe"):
        run_with_retry(boom, policy=RetryPolicy(max_retries=3), should_retry=lambda _v: True)
