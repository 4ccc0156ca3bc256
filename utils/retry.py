"""Attempt/backoff loop shared by the gateway and the execution path."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    attempts: int
    base_delay_seconds: float
    linear: bool = False
    max_delay_seconds: float | None = None

    def delay(self, attempt: int) -> float:
        attempt = max(1, int(attempt))
        base = max(0.0, float(self.base_delay_seconds))
        if self.linear:
            value = base * attempt
        else:
            value = base * (2 ** (attempt - 1))
        if self.max_delay_seconds is not None:
            value = min(value, float(self.max_delay_seconds))
        return value


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    backoff: Backoff,
    should_retry: Callable[[T], bool],
    delay_override: Callable[[T, int], float | None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Callable[[T, int, float], None] | None = None,
) -> T:
    """Run ``operation(attempt)`` until it returns an outcome that should not be retried.

    The last outcome is returned as-is once the attempt budget is spent, so the
    caller decides how exhaustion is reported.
    """
    attempts = max(1, int(backoff.attempts))
    attempt = 0
    while True:
        attempt += 1
        outcome = await operation(attempt)
        if attempt >= attempts or not should_retry(outcome):
            return outcome
        delay = None
        if delay_override is not None:
            delay = delay_override(outcome, attempt)
        if delay is None:
            delay = backoff.delay(attempt)
        if on_retry is not None:
            on_retry(outcome, attempt, delay)
        await sleep(delay)
