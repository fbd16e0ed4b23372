"""Bounded retry combinator.

    result = await with_retry_async(attempt, max_attempts=3, backoff=linear_backoff(0.5))

`attempt` receives the 1-based attempt number. Attempts run one after another,
never in parallel, with `backoff(n)` seconds of sleep after failed attempt n
(no sleep after the last one). Exceptions listed in `retry_on` are caught and
recorded; anything else propagates immediately.

The sync and async runners share the same Result type and schedule, so the
policy does not depend on whether the caller lives in a thread or a task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int], float]


def linear_backoff(step: float) -> Backoff:
    """step, 2*step, 3*step, ... seconds."""
    return lambda attempt: step * attempt


def exponential_backoff(base: float, cap: float = 30.0) -> Backoff:
    return lambda attempt: min(cap, base * (2 ** (attempt - 1)))


def no_backoff(attempt: int) -> float:
    return 0.0


@dataclass
class Result(Generic[T]):
    value: T | None = None
    attempts: int = 0
    errors: list[BaseException] = field(default_factory=list)
    ok: bool = False

    @property
    def last_error(self) -> BaseException | None:
        return self.errors[-1] if self.errors else None


def with_retry(
    attempt_fn: Callable[[int], T],
    max_attempts: int,
    backoff: Backoff = no_backoff,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> Result[T]:
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    result: Result[T] = Result()
    for n in range(1, max_attempts + 1):
        result.attempts = n
        try:
            result.value = attempt_fn(n)
            result.ok = True
            return result
        except retry_on as e:
            result.errors.append(e)
            logger.warning("attempt %d/%d failed: %s", n, max_attempts, e)
        if n < max_attempts:
            sleep(backoff(n))
    return result


async def with_retry_async(
    attempt_fn: Callable[[int], Awaitable[T]],
    max_attempts: int,
    backoff: Backoff = no_backoff,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Result[T]:
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    result: Result[T] = Result()
    for n in range(1, max_attempts + 1):
        result.attempts = n
        try:
            result.value = await attempt_fn(n)
            result.ok = True
            return result
        except retry_on as e:
            result.errors.append(e)
            logger.warning("attempt %d/%d failed: %s", n, max_attempts, e)
        if n < max_attempts:
            await sleep(backoff(n))
    return result
