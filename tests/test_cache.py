"""Tests for the cache layer.

Redis is replaced by an in-test fake client object injected into RedisCache;
the reconnect clock is injected so backoff and probe spacing are exact.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from hedgeco.config import Settings
from hedgeco.storage.cache import (
    TTL_NO_EXPIRY,
    TTL_NO_KEY,
    ConnectionState,
    ConnectionTracker,
    NullCache,
    RedisCache,
    build_cache,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Dict-backed stand-in for redis.asyncio.Redis with a kill switch."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.down = False
        self.closed = False
        self.pings = 0

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    async def ping(self):
        self.pings += 1
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def delete(self, key):
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def exists(self, key):
        self._check()
        return 1 if key in self.data else 0

    async def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def incr(self, key):
        self._check()
        value = self.data.get(key, 0)
        if not isinstance(value, int):
            raise ResponseError("value is not an integer or out of range")
        self.data[key] = value + 1
        return value + 1

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def cache(fake, clock):
    return RedisCache(
        "redis://cache.test:6379/0",
        client=fake,
        clock=clock,
        max_retries=3,
        backoff_base_ms=100,
        backoff_cap_ms=3000,
        probe_interval=5.0,
    )


class TestNullCache:
    async def test_every_operation_answers_like_an_empty_cache(self):
        cache = NullCache()

        assert await cache.get("k") is None
        assert await cache.set("k", {"a": 1}, ttl=10) is False
        assert await cache.delete("k") is False
        assert await cache.exists("k") is False
        assert await cache.ttl_remaining("k") == TTL_NO_KEY
        assert await cache.incr("k", ttl=10) is None
        assert await cache.ping() is False
        assert cache.status()["configured"] is False

    def test_build_cache_without_url_is_null(self):
        assert isinstance(build_cache(Settings(redis_url="  ")), NullCache)

    def test_build_cache_with_url_is_redis(self, fake):
        cache = build_cache(Settings(redis_url="redis://localhost:6379/0"), client=fake)
        assert isinstance(cache, RedisCache)
        assert cache.state == ConnectionState.DISCONNECTED


class TestRedisCacheOperations:
    async def test_values_round_trip_as_json(self, cache, fake):
        assert await cache.set("user:1", {"role": "ADMIN", "ids": [1, 2]}, ttl=30)

        assert await cache.get("user:1") == {"role": "ADMIN", "ids": [1, 2]}
        assert fake.data["user:1"] == '{"role": "ADMIN", "ids": [1, 2]}'
        assert cache.state == ConnectionState.CONNECTED

    async def test_unparseable_value_is_a_miss(self, cache, fake):
        fake.data["legacy"] = "not-json{"

        assert await cache.get("legacy") is None
        assert cache.state == ConnectionState.CONNECTED

    async def test_ttl_sentinels(self, cache):
        await cache.set("forever", 1)
        await cache.set("brief", 1, ttl=42)

        assert await cache.ttl_remaining("missing") == TTL_NO_KEY
        assert await cache.ttl_remaining("forever") == TTL_NO_EXPIRY
        assert await cache.ttl_remaining("brief") == 42

    async def test_delete_and_exists(self, cache):
        await cache.set("k", "v")
        assert await cache.exists("k") is True
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
        assert await cache.exists("k") is False

    async def test_incr_sets_expiry_on_first_hit(self, cache, fake):
        assert await cache.incr("rate:a", ttl=60) == 1
        assert await cache.incr("rate:a", ttl=60) == 2
        assert fake.ttls["rate:a"] == 60

    async def test_rejected_command_does_not_count_as_failure(self, cache, fake):
        fake.data["text"] = "abc"

        assert await cache.incr("text") is None
        assert cache.state == ConnectionState.CONNECTED
        assert cache.tracker.attempt == 0

    @pytest.mark.parametrize("ttl", [0, -5])
    async def test_non_positive_ttl_is_refused(self, cache, fake, ttl):
        assert await cache.set("k", "v", ttl=ttl) is False
        assert await NullCache().set("k", "v", ttl=ttl) is False
        assert "k" not in fake.data

    async def test_unserializable_value_is_refused(self, cache, fake):
        assert await cache.set("k", {1, 2}) is False
        assert await NullCache().set("k", {1, 2}) is False
        assert "k" not in fake.data
        assert cache.state == ConnectionState.DISCONNECTED


class TestFailOpen:
    async def test_unreachable_redis_answers_fail_open_values(self, cache, fake):
        fake.down = True

        assert await cache.get("k") is None
        assert await cache.set("k", "v") is False
        assert await cache.exists("k") is False
        assert await cache.ttl_remaining("k") == TTL_NO_KEY

    async def test_backoff_short_circuits_without_touching_redis(self, cache, fake, clock):
        fake.down = True
        await cache.get("k")
        assert cache.state == ConnectionState.DISCONNECTED
        assert cache.tracker.next_attempt_at == pytest.approx(clock.now + 0.1)
        pings = fake.pings

        # Inside the backoff window nothing is sent
        assert await cache.get("k") is None
        assert fake.pings == pings

        clock.now += 0.1
        await cache.get("k")
        assert fake.pings == pings + 1
        assert cache.tracker.next_attempt_at == pytest.approx(clock.now + 0.2)

    async def test_degrades_after_retry_cap_and_recovers_on_ping(self, cache, fake, clock):
        fake.down = True
        for _ in range(4):
            await cache.get("k")
            clock.now += 3.0

        assert cache.state == ConnectionState.DEGRADED
        assert cache.status()["state"] == "degraded"

        fake.down = False
        assert await cache.ping() is True
        assert cache.state == ConnectionState.CONNECTED
        assert cache.tracker.attempt == 0

    async def test_degraded_operations_probe_at_most_every_interval(self, cache, fake, clock):
        fake.down = True
        for _ in range(4):
            await cache.get("k")
            clock.now += 3.0
        assert cache.state == ConnectionState.DEGRADED

        fake.down = False
        await cache.set("k", "v")
        # First operation in DEGRADED probes and recovers
        assert cache.state == ConnectionState.CONNECTED

        fake.down = True
        for _ in range(4):
            await cache.get("k")
            clock.now += 3.0
        assert cache.state == ConnectionState.DEGRADED
        fake.down = False
        pings = fake.pings
        cache.tracker.mark_probe()

        assert await cache.get("k") is None
        assert fake.pings == pings
        clock.now += 5.0
        await cache.get("k")
        assert fake.pings == pings + 1
        assert cache.state == ConnectionState.CONNECTED


class TestLifecycle:
    async def test_connect_then_close(self, cache, fake):
        assert await cache.connect() is True
        assert cache.state == ConnectionState.CONNECTED

        await cache.close()
        assert fake.closed is True
        assert cache.state == ConnectionState.CLOSED
        assert await cache.get("k") is None
        assert await cache.ping() is False

    async def test_failed_connect_at_startup_is_not_raised(self, cache, fake):
        fake.down = True

        assert await cache.connect() is False
        assert cache.state == ConnectionState.DISCONNECTED
        assert cache.tracker.attempt == 1


class TestConnectionTracker:
    def test_backoff_is_capped(self):
        tracker = ConnectionTracker(max_retries=100, backoff_base_ms=100, backoff_cap_ms=3000)
        for _ in range(50):
            tracker.transition(ConnectionState.CONNECTING)
            tracker.record_failure()

        assert tracker.backoff_ms() == 3000

    def test_closed_is_terminal(self):
        tracker = ConnectionTracker()
        tracker.close()

        assert tracker.transition(ConnectionState.CONNECTING) is False
        tracker.record_failure()
        assert tracker.state == ConnectionState.CLOSED
