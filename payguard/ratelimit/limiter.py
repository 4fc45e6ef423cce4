"""
Admin Rate Limiter

Fixed-window counters for three independent tiers:
- login: per originating identifier (client IP), 5 per 15 minutes
- admin_action: per admin identity, 100 per minute
- bulk_operation: per admin identity, 10 per hour

"Read count, compare to ceiling, increment" is one atomic step per
(tier, identifier) bucket. A call at the ceiling is rejected without
incrementing, so a bucket's count never passes its ceiling.

Backends:
- InMemoryRateLimitBackend: lock-guarded dict (single process)
- RedisRateLimitBackend: Lua script (shared across workers)
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis.asyncio as redis

from ..config import settings
from ..metrics import metrics
from ..schemas import RateLimitResult, RateLimitTier, TierPolicy

logger = logging.getLogger("payguard.ratelimit")


def default_policies() -> dict[RateLimitTier, TierPolicy]:
    """Tier ceilings and windows from settings."""
    return {
        RateLimitTier.LOGIN: TierPolicy(
            limit=settings.login_rate_limit,
            window_seconds=settings.login_rate_window_seconds,
            message="Too many login attempts. Please try again later.",
        ),
        RateLimitTier.ADMIN_ACTION: TierPolicy(
            limit=settings.admin_action_rate_limit,
            window_seconds=settings.admin_action_rate_window_seconds,
            message="Too many admin actions. Please slow down.",
        ),
        RateLimitTier.BULK_OPERATION: TierPolicy(
            limit=settings.bulk_operation_rate_limit,
            window_seconds=settings.bulk_operation_rate_window_seconds,
            message="Too many bulk operations. Please try again later.",
        ),
    }


class RateLimitBackend(ABC):
    """Atomic conditional increment over fixed windows."""

    @abstractmethod
    async def acquire(
        self,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> tuple[bool, int, float]:
        """
        Increment the bucket at ``key`` if it is below ``limit``.

        Returns:
            Tuple of (allowed, count_after_call, seconds_until_window_reset)
        """


class InMemoryRateLimitBackend(RateLimitBackend):
    """
    Buckets in a dict guarded by a threading lock.

    The lock makes the check-and-increment safe for both coroutines and
    threads of one process. Expired buckets are dropped at most once per
    ``sweep_interval`` seconds, so the map only holds live windows.
    ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> [count, window_expires_at]
        self._buckets: dict[str, list[float]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float) -> None:
        expired = [key for key, bucket in self._buckets.items() if now >= bucket[1]]
        for key in expired:
            del self._buckets[key]
        self._next_sweep = now + self._sweep_interval

    async def acquire(
        self,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> tuple[bool, int, float]:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            bucket = self._buckets.get(key)

            if bucket is None or now >= bucket[1]:
                bucket = [0, now + window_seconds]
                self._buckets[key] = bucket

            reset_in = bucket[1] - now
            if bucket[0] >= limit:
                return False, int(bucket[0]), reset_in

            bucket[0] += 1
            return True, int(bucket[0]), reset_in

    def reset(self) -> None:
        """Drop all buckets."""
        with self._lock:
            self._buckets.clear()


# KEYS[1] = bucket key; ARGV[1] = limit; ARGV[2] = window in ms
# Returns {allowed, count, pttl}
_ACQUIRE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
    return {0, current, redis.call('PTTL', KEYS[1])}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, current, redis.call('PTTL', KEYS[1])}
"""


class RedisRateLimitBackend(RateLimitBackend):
    """
    Buckets as Redis counters with a TTL equal to the window.

    Key format: {prefix}ratelimit:{tier}:{identifier}
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "payguard:"):
        """
        Initialize backend.

        Args:
            redis_client: Async Redis client
            key_prefix: Prefix for all Redis keys
        """
        self.redis = redis_client
        self.prefix = key_prefix
        self._script = redis_client.register_script(_ACQUIRE_SCRIPT)

    async def acquire(
        self,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> tuple[bool, int, float]:
        window_ms = window_seconds * 1000
        start = time.perf_counter()
        allowed, count, pttl = await self._script(
            keys=[f"{self.prefix}ratelimit:{key}"],
            args=[limit, window_ms],
        )
        metrics.redis_latency.observe((time.perf_counter() - start) * 1000)

        # PTTL is negative if the key has no expiry or vanished in between
        if pttl is None or int(pttl) < 0:
            pttl = window_ms
        return bool(int(allowed)), int(count), int(pttl) / 1000


class AdminRateLimiter:
    """
    Tiered rate limiter for privileged operations.

    Different identifiers never share a bucket; tiers never share a
    bucket either, because the tier name is part of the key.
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        policies: Optional[dict[RateLimitTier, TierPolicy]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            backend: Counter backend (defaults to in-memory)
            policies: Per-tier ceilings (defaults from settings)
        """
        self.backend = backend if backend is not None else InMemoryRateLimitBackend()
        self.policies = policies if policies is not None else default_policies()

    async def check(self, tier: RateLimitTier, identifier: str) -> RateLimitResult:
        """
        Consume one unit of ``tier`` for ``identifier``.

        Args:
            tier: Rate limit tier
            identifier: Client origin or admin identity

        Returns:
            RateLimitResult; rejected results carry retry_after >= 1
        """
        policy = self.policies[tier]
        key = f"{tier.value}:{identifier}"

        allowed, count, reset_in = await self.backend.acquire(
            key, policy.limit, policy.window_seconds
        )

        if allowed:
            return RateLimitResult(
                allowed=True,
                remaining=max(0, policy.limit - count),
                tier=tier,
            )

        retry_after = max(1, math.ceil(reset_in))
        metrics.rate_limit_rejections.labels(tier=tier.value).inc()
        logger.warning(
            "Rate limit exceeded: tier=%s identifier=%s retry_after=%ss",
            tier.value, identifier, retry_after,
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            retry_after=retry_after,
            message=policy.message,
            tier=tier,
        )

    async def check_login_rate_limit(self, identifier: str) -> RateLimitResult:
        """Login attempts, keyed by originating identifier."""
        return await self.check(RateLimitTier.LOGIN, identifier)

    async def check_admin_action_rate_limit(self, identifier: str) -> RateLimitResult:
        """General admin actions, keyed by admin identity."""
        return await self.check(RateLimitTier.ADMIN_ACTION, identifier)

    async def check_bulk_operation_rate_limit(self, identifier: str) -> RateLimitResult:
        """Bulk admin operations, keyed by admin identity."""
        return await self.check(RateLimitTier.BULK_OPERATION, identifier)
