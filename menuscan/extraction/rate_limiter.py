"""Per-model request and token throttling."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..config import ModelLimits, PipelineConfig
from .service import ModelVariant

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

MIN_WAIT_SECONDS = 1.0


class RateLimiter:
    """Throttles calls to one model variant under a per-window request and token budget.

    The check-sleep-dispatch decision runs under a FIFO lock so two callers can never
    both observe spare budget at the same instant. The task body runs outside the
    lock; dispatched tasks may overlap.
    """

    def __init__(
        self,
        name: str,
        limits: ModelLimits,
        *,
        estimated_tokens: int = 1000,
        window_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if limits.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.name = name
        self.limits = limits
        self.estimated_tokens = estimated_tokens
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.request_count = 0
        self.token_count = 0
        self.reset_time = clock() + window_seconds
        self.last_request_time: Optional[float] = None
        self.queue_length = 0
        self.dispatched = 0
        self.total_wait_seconds = 0.0

    @property
    def min_interval(self) -> float:
        return self.window_seconds / self.limits.requests_per_minute

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Wait for budget, then run ``task`` and return its result."""

        self.queue_length += 1
        acquired = False
        try:
            async with self._lock:
                self.queue_length -= 1
                acquired = True
                await self._acquire_slot()
        finally:
            if not acquired:
                self.queue_length -= 1
        return await task()

    async def _acquire_slot(self) -> None:
        while True:
            now = self._clock()
            self._roll_window(now)
            wait = self._required_wait(now)
            if wait <= 0:
                break
            logger.debug(
                "Rate limit wait on %s: %.2fs (%s/%s requests, %s/%s tokens)",
                self.name,
                wait,
                self.request_count,
                self.limits.requests_per_minute,
                self.token_count,
                self.limits.tokens_per_minute,
            )
            self.total_wait_seconds += wait
            await self._sleep(wait)

        self.last_request_time = now
        self.request_count += 1
        self.token_count += self.estimated_tokens
        self.dispatched += 1

    def _roll_window(self, now: float) -> None:
        if now >= self.reset_time:
            self.request_count = 0
            self.token_count = 0
            self.reset_time = now + self.window_seconds

    def _required_wait(self, now: float) -> float:
        since = now - self.last_request_time if self.last_request_time is not None else math.inf
        interval = self.min_interval
        if self.request_count >= self.limits.requests_per_minute:
            return max(self.reset_time - now, interval - since, MIN_WAIT_SECONDS)
        if since < interval:
            return max(interval - since, MIN_WAIT_SECONDS)
        if self.token_count > 0 and self.token_count + self.estimated_tokens > self.limits.tokens_per_minute:
            return self.reset_time - now
        return 0.0

    def stats(self) -> Dict[str, Any]:
        expired = self._clock() >= self.reset_time
        return {
            "model": self.name,
            "request_count": 0 if expired else self.request_count,
            "token_count": 0 if expired else self.token_count,
            "limits": {
                "requests_per_minute": self.limits.requests_per_minute,
                "tokens_per_minute": self.limits.tokens_per_minute,
            },
            "queue_length": self.queue_length,
            "dispatched": self.dispatched,
            "total_wait_seconds": round(self.total_wait_seconds, 3),
        }


class RateLimiterRegistry:
    """Owns one :class:`RateLimiter` per model variant for the lifetime of a pipeline."""

    def __init__(self, limiters: Dict[ModelVariant, RateLimiter]) -> None:
        self._limiters = dict(limiters)
        self._closed = False

    @classmethod
    def create(
        cls,
        config: PipelineConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> "RateLimiterRegistry":
        limiters = {
            variant: RateLimiter(
                config.model_name(variant.value),
                config.limits_for(variant.value),
                estimated_tokens=config.estimated_tokens_per_call,
                window_seconds=config.rate_window_seconds,
                clock=clock,
                sleep=sleep,
            )
            for variant in ModelVariant
        }
        return cls(limiters)

    def get(self, variant: ModelVariant) -> RateLimiter:
        if self._closed:
            raise RuntimeError("Rate limiter registry has been shut down")
        return self._limiters[variant]

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {variant.value: limiter.stats() for variant, limiter in self._limiters.items()}

    async def shutdown(self) -> None:
        self._closed = True
        self._limiters.clear()
