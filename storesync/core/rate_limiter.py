"""
Per-platform outbound rate limiting
Token bucket shared by every worker of a (tenant, platform) pair
"""

import asyncio
import logging
import time
from typing import Dict, Any, Callable, Optional, Tuple, Awaitable


class TokenBucket:
    """Token bucket with cooperative waiting and server-imposed pauses"""

    def __init__(self, rate_per_second: float, capacity: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate = float(rate_per_second)
        self.capacity = float(capacity if capacity is not None else max(1.0, rate_per_second))
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated_at = clock()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    def _refill(self, now: float):
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    def _wait_time(self, now: float) -> float:
        if now < self._blocked_until:
            return self._blocked_until - now
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self.rate

    def try_acquire(self) -> bool:
        """Take a token without waiting"""
        now = self._clock()
        self._refill(now)
        if self._wait_time(now) > 0:
            return False
        self._tokens -= 1.0
        return True

    async def acquire(self) -> float:
        """Wait until a token is available; returns seconds waited"""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                delay = self._wait_time(now)
                if delay <= 0:
                    self._tokens -= 1.0
                    return waited
                await self._sleep(delay)
                waited += delay

    def penalize(self, retry_after: float):
        """Block the bucket after a 429-style answer"""
        if retry_after <= 0:
            return
        now = self._clock()
        self._blocked_until = max(self._blocked_until, now + retry_after)
        self._tokens = 0.0
        self._updated_at = now


class RateLimiterRegistry:
    """One bucket per (tenant, platform), rates configured per platform"""

    def __init__(self, config: Dict[str, Any], clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or {}
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}
        self.logger = logging.getLogger(__name__)

    def _platform_settings(self, platform: str) -> Dict[str, Any]:
        defaults = self.config.get('default', {'requests_per_second': 2, 'burst': 5})
        return {**defaults, **self.config.get(platform, {})}

    def get(self, tenant: str, platform: str) -> TokenBucket:
        key = (tenant, platform)
        bucket = self._buckets.get(key)
        if bucket is None:
            settings = self._platform_settings(platform)
            bucket = TokenBucket(
                rate_per_second=float(settings.get('requests_per_second', 2)),
                capacity=float(settings.get('burst', settings.get('requests_per_second', 2))),
                clock=self._clock,
                sleep=self._sleep
            )
            self._buckets[key] = bucket
            self.logger.debug(f"Rate limiter created for {tenant}/{platform}: {bucket.rate}/s burst {bucket.capacity}")
        return bucket
