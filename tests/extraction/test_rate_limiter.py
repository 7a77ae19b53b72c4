from __future__ import annotations

import asyncio
from typing import List

import pytest
from menuscan.config import ModelLimits, PipelineConfig
from menuscan.extraction.rate_limiter import RateLimiter, RateLimiterRegistry
from menuscan.extraction.service import ModelVariant


class FakeClock:
    """Monotonic clock advanced only by the limiter's own sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _limiter(clock: FakeClock, rpm: int = 2, tpm: int = 1_000_000, tokens: int = 1000) -> RateLimiter:
    return RateLimiter(
        "gemini-test",
        ModelLimits(requests_per_minute=rpm, tokens_per_minute=tpm),
        estimated_tokens=tokens,
        window_seconds=60.0,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.mark.asyncio
async def test_third_call_waits_for_interval_and_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, rpm=2)
    dispatched: List[float] = []

    async def task() -> float:
        dispatched.append(clock.now)
        return clock.now

    results = await asyncio.gather(*(limiter.schedule(task) for _ in range(3)))

    assert results == dispatched
    assert dispatched[0] == 0.0
    assert dispatched[1] >= 30.0
    assert dispatched[2] - dispatched[0] >= 30.0
    assert dispatched == sorted(dispatched)
    assert limiter.dispatched == 3


@pytest.mark.asyncio
async def test_counters_reset_after_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, rpm=2)

    async def noop() -> None:
        return None

    await limiter.schedule(noop)
    assert limiter.stats()["request_count"] == 1

    clock.now = 61.0
    assert limiter.stats()["request_count"] == 0

    await limiter.schedule(noop)
    assert limiter.request_count == 1
    assert limiter.token_count == 1000
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_token_budget_defers_until_window_reset() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, rpm=100, tpm=1500, tokens=1000)
    dispatched: List[float] = []

    async def task() -> None:
        dispatched.append(clock.now)

    await limiter.schedule(task)
    await limiter.schedule(task)

    assert dispatched[0] == 0.0
    assert dispatched[1] >= 60.0


@pytest.mark.asyncio
async def test_short_interval_waits_at_least_one_second() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, rpm=600)

    async def noop() -> None:
        return None

    await limiter.schedule(noop)
    await limiter.schedule(noop)

    assert clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_task_failure_propagates_and_counts_dispatch() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)

    async def boom() -> None:
        raise RuntimeError("503")

    with pytest.raises(RuntimeError):
        await limiter.schedule(boom)

    assert limiter.dispatched == 1
    assert limiter.queue_length == 0


def test_rejects_non_positive_rpm() -> None:
    with pytest.raises(ValueError):
        _limiter(FakeClock(), rpm=0)


@pytest.mark.asyncio
async def test_registry_lifecycle() -> None:
    clock = FakeClock()
    config = PipelineConfig(pro_model="pro-x", flash_model="flash-x", flash_lite_model="lite-x")
    registry = RateLimiterRegistry.create(config, clock=clock, sleep=clock.sleep)

    assert registry.get(ModelVariant.PRO).name == "pro-x"
    assert registry.get(ModelVariant.PRO).limits.requests_per_minute == 2
    assert set(registry.stats()) == {"pro", "flash", "flash_lite"}

    await registry.shutdown()

    with pytest.raises(RuntimeError):
        registry.get(ModelVariant.FLASH)
