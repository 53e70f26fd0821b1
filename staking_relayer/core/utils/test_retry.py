import pytest

from staking_relayer.core.utils.retry import (
    escalating_timeouts_s,
    exponential_backoff_s,
    retry_async,
)


def test_exponential_backoff():
    assert exponential_backoff_s(0, base_delay_s=1.0) == 1.0
    assert exponential_backoff_s(2, base_delay_s=1.0) == 4.0
    assert exponential_backoff_s(10, base_delay_s=1.0, max_delay_s=30.0) == 30.0


def test_escalating_timeouts():
    assert escalating_timeouts_s(60, 3) == (60.0, 120.0, 240.0)
    with pytest.raises(ValueError):
        escalating_timeouts_s(60, 0)


@pytest.mark.asyncio
async def test_retry_async_passes_attempt_and_recovers():
    seen: list[int] = []

    async def fn(attempt: int) -> str:
        seen.append(attempt)
        if attempt < 2:
            raise TimeoutError("slow")
        return "ok"

    result = await retry_async(fn, max_retries=3, get_delay_s=lambda *_: 0.0)
    assert result == "ok"
    assert seen == [0, 1, 2]


@pytest.mark.asyncio
async def test_retry_async_stops_on_non_retryable():
    calls = 0

    async def fn(attempt: int) -> None:
        nonlocal calls
        calls += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(
            fn,
            max_retries=3,
            should_retry=lambda exc: isinstance(exc, TimeoutError),
            get_delay_s=lambda *_: 0.0,
        )
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_async_reraises_last_error():
    retries: list[int] = []

    async def fn(attempt: int) -> None:
        raise TimeoutError(f"attempt {attempt}")

    with pytest.raises(TimeoutError, match="attempt 2"):
        await retry_async(
            fn,
            max_retries=3,
            get_delay_s=lambda *_: 0.0,
            on_retry=lambda attempt, exc, delay: retries.append(attempt),
        )
    assert retries == [0, 1]
