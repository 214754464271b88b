"""Redis bucket store tests — against a small in-memory stand-in for the client.

Learn: FakeRedis implements just the calls RedisBucketStore makes
(pipeline with INCR / PEXPIRE NX / PTTL, scan_iter, delete, aclose) and
records each pipeline, so the tests can check both the command sequence
and the window arithmetic. down=True makes every call raise a redis
ConnectionError, which is how the fail-open path is exercised.
"""

import fnmatch

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from coachguard.config import settings
from coachguard.main import create_app
from coachguard.ratelimit import (
    EndpointClass,
    RateLimitBackendError,
    RateLimiter,
    RateLimitRule,
    RedisBucketStore,
)


class FakeRedis:
    def __init__(self, down: bool = False):
        self.down = down
        self.now_ms = 0
        self.values: dict[str, int] = {}
        self.expires_at: dict[str, int] = {}
        self.pipelines: list[list[tuple]] = []
        self.closed = False

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)
        for key in [k for k, at in self.expires_at.items() if at <= self.now_ms]:
            del self.values[key]
            del self.expires_at[key]

    def pipeline(self, transaction: bool = True):
        assert transaction, "window updates must run in MULTI/EXEC"
        return FakePipeline(self)

    def _check(self):
        if self.down:
            raise RedisConnectionError("Error 111 connecting to localhost:6379")

    async def scan_iter(self, match: str):
        self._check()
        for key in list(self.values):
            if fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, key: str) -> int:
        self._check()
        self.expires_at.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        self.closed = True

    # Commands as executed inside a transaction

    def _incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def _pexpire(self, key, ms, nx=False):
        if key not in self.values or (nx and key in self.expires_at):
            return False
        self.expires_at[key] = self.now_ms + ms
        return True

    def _pttl(self, key):
        if key not in self.values:
            return -2
        if key not in self.expires_at:
            return -1
        return self.expires_at[key] - self.now_ms


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.commands: list[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incr(self, key):
        self.commands.append(("incr", key))

    def pexpire(self, key, ms, nx=False):
        self.commands.append(("pexpire", key, ms, nx))

    def pttl(self, key):
        self.commands.append(("pttl", key))

    async def execute(self):
        self.redis._check()
        self.redis.pipelines.append(list(self.commands))
        results = []
        for name, *args in self.commands:
            if name == "pexpire":
                key, ms, nx = args
                results.append(self.redis._pexpire(key, ms, nx=nx))
            else:
                results.append(getattr(self.redis, f"_{name}")(*args))
        return results


def _limiter(redis, limit=5, window=60):
    return RateLimiter(
        RedisBucketStore(redis),
        {
            EndpointClass.AUTH: RateLimitRule(limit, window),
            EndpointClass.API: RateLimitRule(30, window),
        },
    )


# ═══════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_hit_runs_incr_pexpire_nx_pttl_in_one_transaction():
    redis = FakeRedis()
    store = RedisBucketStore(redis)

    count, reset_in = await store.hit("auth:10.0.0.1", 60)

    assert (count, reset_in) == (1, 60.0)
    assert redis.pipelines == [
        [
            ("incr", "coachguard:rl:auth:10.0.0.1"),
            ("pexpire", "coachguard:rl:auth:10.0.0.1", 60_000, True),
            ("pttl", "coachguard:rl:auth:10.0.0.1"),
        ]
    ]


@pytest.mark.asyncio
async def test_expiry_is_set_once_per_window():
    redis = FakeRedis()
    store = RedisBucketStore(redis)

    await store.hit("auth:ip", 60)
    redis.advance(45)
    count, reset_in = await store.hit("auth:ip", 60)

    # The second hit didn't push the window out
    assert count == 2
    assert reset_in == 15.0


@pytest.mark.asyncio
async def test_limiter_over_redis_rejects_sixth_and_reopens():
    redis = FakeRedis()
    limiter = _limiter(redis)

    results = [await limiter.check("10.0.0.1", EndpointClass.AUTH) for _ in range(6)]
    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert results[-1].retry_after == 60

    redis.advance(60)
    result = await limiter.check("10.0.0.1", EndpointClass.AUTH)
    assert result.allowed
    assert result.remaining == 4


@pytest.mark.asyncio
async def test_missing_ttl_falls_back_to_window():
    redis = FakeRedis()
    store = RedisBucketStore(redis)
    # A key left without an expiry (e.g. written by hand)
    redis.values["coachguard:rl:api:ip"] = 3

    count, reset_in = await store.hit("api:ip", 60)

    # PEXPIRE NX sets it now, so the TTL is the full window
    assert count == 4
    assert reset_in == 60.0


@pytest.mark.asyncio
async def test_reset_deletes_only_own_keys():
    redis = FakeRedis()
    store = RedisBucketStore(redis)
    await store.hit("auth:a", 60)
    await store.hit("api:b", 60)
    redis.values["other:key"] = 1

    await store.reset()

    assert redis.values == {"other:key": 1}


@pytest.mark.asyncio
async def test_outage_surfaces_as_backend_error():
    store = RedisBucketStore(FakeRedis(down=True))
    with pytest.raises(RateLimitBackendError):
        await store.hit("auth:ip", 60)
    with pytest.raises(RateLimitBackendError):
        await store.reset()


@pytest.mark.asyncio
async def test_close_closes_client():
    redis = FakeRedis()
    await _limiter(redis).close()
    assert redis.closed


# ═══════════════════════════════════════════════════════════
# Middleware fails open
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_redis_outage_lets_requests_through(provider, session_factory, make_user):
    limiter = RateLimiter.from_settings(settings, RedisBucketStore(FakeRedis(down=True)))
    app = create_app(provider=provider, session_factory=session_factory, rate_limiter=limiter)
    await make_user(email="target@example.com")
    body = {"email": "target@example.com", "password": "wrong-password"}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        statuses = [
            (await ac.post("/api/v1/auth/login", json=body)).status_code for _ in range(7)
        ]

    assert statuses == [401] * 7
    assert len([c for c in provider.calls if c[0] == "sign_in"]) == 7
