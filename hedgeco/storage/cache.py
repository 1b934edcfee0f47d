from __future__ import annotations

import asyncio
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from hedgeco.logging import get_logger

logger = get_logger(__name__)

# Redis TTL replies
TTL_NO_KEY = -2
TTL_NO_EXPIRY = -1

_CONNECTION_FAILURES = (RedisError, OSError, asyncio.TimeoutError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


_TRANSITIONS: Dict[ConnectionState, frozenset] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.DEGRADED,
            ConnectionState.CLOSED,
        }
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.DEGRADED, ConnectionState.CLOSED}
    ),
    ConnectionState.DEGRADED: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.CLOSED: frozenset(),
}


class ConnectionTracker:
    """Connection lifecycle for the cache client.

    Failures schedule the next attempt at ``now + min(attempt * base, cap)``
    instead of sleeping; callers consult :meth:`can_attempt` and short-circuit
    until the deadline passes. Once ``attempt`` exceeds ``max_retries`` the
    tracker parks in ``DEGRADED`` and only probes, at most once per
    ``probe_interval`` seconds, may bring it back.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_base_ms: int = 100,
        backoff_cap_ms: int = 3000,
        probe_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.probe_interval = probe_interval
        self._clock = clock
        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.next_attempt_at = 0.0
        self.last_probe_at: Optional[float] = None

    def transition(self, new_state: ConnectionState) -> bool:
        current = self.state
        if new_state == current:
            return True
        if new_state not in _TRANSITIONS[current]:
            logger.debug(
                "cache_transition_ignored", from_state=current.value, to_state=new_state.value
            )
            return False
        self.state = new_state
        logger.info(
            "cache_state_changed",
            from_state=current.value,
            to_state=new_state.value,
            attempt=self.attempt,
        )
        return True

    def backoff_ms(self) -> int:
        return min(self.attempt * self.backoff_base_ms, self.backoff_cap_ms)

    def can_attempt(self) -> bool:
        return self._clock() >= self.next_attempt_at

    def should_probe(self) -> bool:
        if self.last_probe_at is None:
            return True
        return self._clock() - self.last_probe_at >= self.probe_interval

    def mark_probe(self) -> None:
        self.last_probe_at = self._clock()

    def record_success(self) -> None:
        self.attempt = 0
        self.next_attempt_at = 0.0
        self.transition(ConnectionState.CONNECTED)

    def record_failure(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.attempt += 1
        self.next_attempt_at = self._clock() + self.backoff_ms() / 1000.0
        if self.attempt > self.max_retries:
            self.transition(ConnectionState.DEGRADED)
        else:
            self.transition(ConnectionState.DISCONNECTED)

    def close(self) -> None:
        self.transition(ConnectionState.CLOSED)


class CacheLayer:
    """Uniform key-value contract shared by every cache variant.

    Operations never raise on backend trouble; they answer with the same
    value an empty cache would give.
    """

    configured: bool = False

    async def get(self, key: str) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def ttl_remaining(self, key: str) -> int:
        raise NotImplementedError

    async def incr(self, key: str, ttl: Optional[int] = None) -> Optional[int]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def connect(self) -> bool:
        return False

    async def close(self) -> None:
        return None

    def status(self) -> Dict[str, Any]:
        raise NotImplementedError


class NullCache(CacheLayer):
    """Used when no REDIS_URL is configured: every read misses, every write is dropped."""

    configured = False

    async def get(self, key: str) -> Any:
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return False

    async def delete(self, key: str) -> bool:
        return False

    async def exists(self, key: str) -> bool:
        return False

    async def ttl_remaining(self, key: str) -> int:
        return TTL_NO_KEY

    async def incr(self, key: str, ttl: Optional[int] = None) -> Optional[int]:
        return None

    async def ping(self) -> bool:
        return False

    def status(self) -> Dict[str, Any]:
        return {
            "configured": False,
            "state": ConnectionState.DISCONNECTED.value,
            "attempt": 0,
            "last_probe_at": None,
        }


class RedisCache(CacheLayer):
    """Redis-backed cache with JSON values and a non-blocking reconnect policy."""

    configured = True

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        max_retries: int = 3,
        backoff_base_ms: int = 100,
        backoff_cap_ms: int = 3000,
        probe_interval: float = 5.0,
        client: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        # from_url does not open a socket; the first command does
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.tracker = ConnectionTracker(
            max_retries=max_retries,
            backoff_base_ms=backoff_base_ms,
            backoff_cap_ms=backoff_cap_ms,
            probe_interval=probe_interval,
            clock=clock,
        )

    @property
    def state(self) -> ConnectionState:
        return self.tracker.state

    async def _ping_client(self) -> bool:
        return bool(
            await asyncio.wait_for(self.client.ping(), timeout=self.operation_timeout)
        )

    async def connect(self) -> bool:
        if self.tracker.state in (ConnectionState.CLOSED, ConnectionState.CONNECTED):
            return self.tracker.state == ConnectionState.CONNECTED
        if self.tracker.state == ConnectionState.DEGRADED:
            return await self._probe()
        self.tracker.transition(ConnectionState.CONNECTING)
        try:
            await self._ping_client()
        except _CONNECTION_FAILURES as exc:
            logger.warning(
                "cache_connect_failed", error=str(exc), attempt=self.tracker.attempt + 1
            )
            self.tracker.record_failure()
            return False
        self.tracker.record_success()
        return True

    async def _probe(self) -> bool:
        self.tracker.mark_probe()
        try:
            await self._ping_client()
        except _CONNECTION_FAILURES as exc:
            logger.debug("cache_probe_failed", error=str(exc))
            self.tracker.record_failure()
            return False
        logger.info("cache_recovered")
        self.tracker.record_success()
        return True

    async def _ready(self) -> bool:
        state = self.tracker.state
        if state == ConnectionState.CONNECTED:
            return True
        if state == ConnectionState.CLOSED:
            return False
        if state == ConnectionState.DEGRADED:
            if not self.tracker.should_probe():
                return False
            return await self._probe()
        if not self.tracker.can_attempt():
            return False
        return await self.connect()

    async def _run(
        self, op: str, command: Callable[[], Awaitable[Any]], fallback: Any
    ) -> Any:
        if not await self._ready():
            return fallback
        try:
            return await asyncio.wait_for(command(), timeout=self.operation_timeout)
        except ResponseError as exc:
            # Server answered; the connection itself is fine
            logger.warning("cache_command_rejected", op=op, error=str(exc))
            return fallback
        except _CONNECTION_FAILURES as exc:
            logger.warning("cache_operation_failed", op=op, error=str(exc))
            self.tracker.record_failure()
            return fallback

    async def get(self, key: str) -> Any:
        raw = await self._run("get", lambda: self.client.get(key), None)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("cache_value_unparseable", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if ttl is not None and ttl <= 0:
            logger.warning("cache_set_invalid_ttl", key=key, ttl=ttl)
            return False
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning("cache_value_unserializable", key=key, error=str(exc))
            return False
        result = await self._run(
            "set", lambda: self.client.set(key, payload, ex=ttl), None
        )
        return bool(result)

    async def delete(self, key: str) -> bool:
        removed = await self._run("delete", lambda: self.client.delete(key), 0)
        return bool(removed)

    async def exists(self, key: str) -> bool:
        found = await self._run("exists", lambda: self.client.exists(key), 0)
        return bool(found)

    async def ttl_remaining(self, key: str) -> int:
        remaining = await self._run("ttl", lambda: self.client.ttl(key), TTL_NO_KEY)
        return int(remaining)

    async def incr(self, key: str, ttl: Optional[int] = None) -> Optional[int]:
        async def _incr() -> int:
            value = await self.client.incr(key)
            if value == 1 and ttl:
                await self.client.expire(key, ttl)
            return int(value)

        return await self._run("incr", _incr, None)

    async def ping(self) -> bool:
        state = self.tracker.state
        if state == ConnectionState.CLOSED:
            return False
        if state == ConnectionState.DEGRADED:
            return await self._probe()
        if state != ConnectionState.CONNECTED:
            return await self.connect()
        try:
            return await self._ping_client()
        except _CONNECTION_FAILURES as exc:
            logger.warning("cache_ping_failed", error=str(exc))
            self.tracker.record_failure()
            return False

    async def close(self) -> None:
        if self.tracker.state == ConnectionState.CLOSED:
            return
        self.tracker.close()
        try:
            await self.client.aclose()
        except _CONNECTION_FAILURES as exc:
            logger.warning("cache_close_failed", error=str(exc))

    def status(self) -> Dict[str, Any]:
        return {
            "configured": True,
            "state": self.tracker.state.value,
            "attempt": self.tracker.attempt,
            "last_probe_at": self.tracker.last_probe_at,
        }


def build_cache(settings, *, client: Any = None) -> CacheLayer:
    """Pick the cache variant for ``settings``; call sites never branch on configuration."""

    if not settings.redis_url:
        logger.info("cache_not_configured")
        return NullCache()
    return RedisCache(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        max_retries=settings.redis_max_retries,
        backoff_base_ms=settings.redis_backoff_base_ms,
        backoff_cap_ms=settings.redis_backoff_cap_ms,
        probe_interval=settings.redis_probe_interval_seconds,
        client=client,
    )


__all__ = [
    "TTL_NO_KEY",
    "TTL_NO_EXPIRY",
    "ConnectionState",
    "ConnectionTracker",
    "CacheLayer",
    "NullCache",
    "RedisCache",
    "build_cache",
]
