from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Callable

from hedgeco.logging import get_logger
from hedgeco.storage.cache import CacheLayer

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window counter over the cache. Lets everything through when the cache is down."""

    def __init__(self, cache: CacheLayer, *, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def _window_key(key: str, window_start: int) -> str:
        # Hash the subject so emails and other delimiters never shape the key
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}:{window_start}"

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(allowed=True, remaining=0, reset_seconds=0)
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        now = int(self._clock())
        window_start = now - (now % window_seconds)
        reset_seconds = window_start + window_seconds - now
        count = await self.cache.incr(self._window_key(key, window_start), ttl=window_seconds)
        if count is None:
            return RateLimitResult(allowed=True, remaining=limit, reset_seconds=0)
        allowed = count <= limit
        if not allowed:
            logger.warning("rate_limit_exceeded", limit=limit, window=window_seconds)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
        )


__all__ = ["RateLimiter", "RateLimitResult"]
