"""Fixed-window rate limiter keyed by (client IP, endpoint class).

Learn: Each key gets a counter and a window that opens on the key's first
hit. Every check() increments first and compares second:

    count ≤ limit  → allowed   (remaining = limit - count)
    count > limit  → limited   (retry_after = seconds until the window closes)

Once the window elapses the next hit opens a fresh one with count 1.
Counting happens before the wrapped operation runs and is never given
back — a failed login costs a slot, and so does a request whose client
hung up. That is what makes the limiter bite on credential guessing.

Two stores:
- MemoryBucketStore: per-process dict under one lock (default; a restart
  clears throttling state)
- RedisBucketStore: INCR/PEXPIRE in a MULTI pipeline, shared by workers
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from coachguard.config import Settings

logger = structlog.get_logger()


class EndpointClass(str, Enum):
    AUTH = "auth"
    API = "api"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass
class RateLimitBucket:
    window_start: float
    window_seconds: float
    count: int = 0

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the window resets


class RateLimitBackendError(Exception):
    """The bucket store couldn't be reached."""


class BucketStore(ABC):
    @abstractmethod
    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Increment key's counter; return (count, seconds until reset)."""

    async def reset(self) -> None:
        """Forget every bucket."""


# ─── In-process store ───────────────────────────────────


class MemoryBucketStore(BucketStore):
    """Buckets in a dict; increment-and-read under one lock.

    Learn: A threading.Lock, not an asyncio.Lock: the critical section
    never awaits. Expired buckets are swept every sweep_interval hits.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: int = 1000,
    ):
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._hits_since_sweep = 0

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None or bucket.expired(now):
                bucket = RateLimitBucket(window_start=now, window_seconds=window_seconds)
                self._buckets[key] = bucket
            bucket.count += 1
            count = bucket.count
            reset_in = bucket.window_start + bucket.window_seconds - now

            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self._sweep_interval:
                self._sweep(now)
        return count, reset_in

    async def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        for key in [k for k, b in self._buckets.items() if b.expired(now)]:
            del self._buckets[key]
        self._hits_since_sweep = 0


# ─── Redis store ────────────────────────────────────────


class RedisBucketStore(BucketStore):
    """Shared buckets in Redis.

    Learn: INCR, PEXPIRE NX and PTTL run in one MULTI/EXEC, so the expiry
    is set exactly once per window (on the hit that created the key) and
    the TTL we read belongs to the count we read.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "coachguard:rl"):
        self.redis = redis
        self.prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        redis_key = f"{self.prefix}:{key}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.pexpire(redis_key, window_seconds * 1000, nx=True)
                pipe.pttl(redis_key)
                count, _, ttl_ms = await pipe.execute()
        except RedisError as e:
            raise RateLimitBackendError(str(e)) from e
        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_seconds * 1000
        return int(count), ttl_ms / 1000

    async def reset(self) -> None:
        try:
            async for redis_key in self.redis.scan_iter(match=f"{self.prefix}:*"):
                await self.redis.delete(redis_key)
        except RedisError as e:
            raise RateLimitBackendError(str(e)) from e

    async def close(self) -> None:
        await self.redis.aclose()


# ─── Limiter ────────────────────────────────────────────


class RateLimiter:
    """Applies per-class rules on top of a bucket store."""

    def __init__(self, store: BucketStore, rules: dict[EndpointClass, RateLimitRule]):
        self.store = store
        self.rules = dict(rules)

    @classmethod
    def from_settings(cls, settings: Settings, store: BucketStore) -> "RateLimiter":
        return cls(
            store,
            {
                EndpointClass.AUTH: RateLimitRule(
                    settings.rate_limit_auth_limit,
                    settings.rate_limit_auth_window_seconds,
                ),
                EndpointClass.API: RateLimitRule(
                    settings.rate_limit_api_limit,
                    settings.rate_limit_api_window_seconds,
                ),
            },
        )

    async def check(self, client_ip: str, endpoint_class: EndpointClass) -> RateLimitResult:
        rule = self.rules[endpoint_class]
        count, reset_in = await self.store.hit(
            f"{endpoint_class.value}:{client_ip}", rule.window_seconds
        )
        result = RateLimitResult(
            allowed=count <= rule.limit,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            retry_after=max(1, math.ceil(reset_in)),
        )
        if not result.allowed:
            logger.warning(
                "ratelimit.exceeded",
                client_ip=client_ip,
                endpoint_class=endpoint_class.value,
                count=count,
                limit=rule.limit,
                retry_after=result.retry_after,
            )
        return result

    async def reset(self) -> None:
        await self.store.reset()

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


def build_rate_limiter(
    settings: Settings, redis: Optional[aioredis.Redis] = None
) -> RateLimiter:
    """Limiter for the configured backend."""
    if settings.rate_limit_backend == "redis":
        if redis is None:
            redis = aioredis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
        return RateLimiter.from_settings(settings, RedisBucketStore(redis))
    return RateLimiter.from_settings(settings, MemoryBucketStore())
