"""Bounded retry-poll used to verify delivery."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from syncprobe.exceptions import DeliveryTimeoutError


async def poll_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval_ms: int,
    raise_on_timeout: bool = False,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> tuple[bool, int]:
    """Evaluate *predicate* up to *attempts* times, *interval_ms* apart.

    Returns ``(satisfied, elapsed_ms)``; elapsed time runs from the call to
    the first true evaluation, or to the last attempt when the budget is
    exhausted, rounded to whole milliseconds.  There is no wait after the
    final attempt.

    Raises
    ------
    DeliveryTimeoutError
        Only when *raise_on_timeout* is set and the budget is exhausted.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    started = clock()
    for attempt in range(attempts):
        if predicate():
            return True, _elapsed_ms(clock, started)
        if attempt < attempts - 1:
            await sleep(interval_ms / 1000)

    elapsed = _elapsed_ms(clock, started)
    if raise_on_timeout:
        raise DeliveryTimeoutError(
            f"Condition not met after {attempts} attempts ({elapsed} ms)",
            elapsed_ms=elapsed,
        )
    return False, elapsed


def _elapsed_ms(clock: Callable[[], float], started: float) -> int:
    return round((clock() - started) * 1000)
