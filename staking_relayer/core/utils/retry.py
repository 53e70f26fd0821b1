from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


def exponential_backoff_s(
    attempt: int, *, base_delay_s: float = 0.25, max_delay_s: float | None = None
) -> float:
    delay_s = base_delay_s * (2**attempt)
    if max_delay_s is not None:
        delay_s = min(delay_s, max_delay_s)
    return delay_s


def escalating_timeouts_s(
    base_timeout_s: float, attempts: int, *, factor: float = 2.0
) -> tuple[float, ...]:
    """(60, 3) -> (60.0, 120.0, 240.0)"""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    return tuple(float(base_timeout_s) * (factor**i) for i in range(attempts))


async def retry_async(
    fn: Callable[[int], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_s: float = 0.25,
    max_delay_s: float | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    get_delay_s: Callable[[int, Exception], float] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    """Call ``fn(attempt)`` until it succeeds or ``max_retries`` is exhausted.

    The attempt index is passed through so callers can escalate per-attempt
    budgets (for example receipt timeouts). The last exception is re-raised.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    for attempt in range(max_retries):
        try:
            return await fn(attempt)
        except Exception as exc:  # noqa: BLE001
            if attempt >= max_retries - 1:
                raise
            if should_retry is not None and not should_retry(exc):
                raise

            delay_s = (
                get_delay_s(attempt, exc)
                if get_delay_s is not None
                else exponential_backoff_s(
                    attempt, base_delay_s=base_delay_s, max_delay_s=max_delay_s
                )
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay_s)
            if delay_s > 0:
                await asyncio.sleep(delay_s)

    raise RuntimeError("retry_async exhausted retries")
