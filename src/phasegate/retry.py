"""Bounded retry with exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Up to ``max_retries`` retries after the first attempt, with backoff between them."""

    max_retries: int = 1
    backoff_seconds: float = 0.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 300.0

    @property
    def max_attempts(self) -> int:
        return max(0, int(self.max_retries)) + 1

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before *attempt* (1-based); the first attempt never waits."""
        if attempt <= 1 or self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.multiplier ** (attempt - 2))
        return min(delay, self.max_backoff_seconds)

    def attempts(self, sleep: Callable[[float], None] = time.sleep) -> Iterator[int]:
        """Yield attempt numbers ``1..max_attempts``, sleeping the backoff between them."""
        for attempt in range(1, self.max_attempts + 1):
            delay = self.delay_before(attempt)
            if delay > 0:
                logger.info("Retrying in %.1fs (attempt %s/%s)", delay, attempt, self.max_attempts)
                sleep(delay)
            yield attempt


def run_with_retry(
    operation: Callable[[int], T],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[T], bool],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation(attempt)`` until ``should_retry`` is false or attempts run out.

    Returns the last result. Always terminates after ``policy.max_attempts``
    calls.
    """
    result: T | None = None
    for attempt in policy.attempts(sleep):
        result = operation(attempt)
        if not should_retry(result):
            return result
    assert result is not None
    return result
