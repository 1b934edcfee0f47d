from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hedgeco.logging import get_logger
from hedgeco.storage.cache import CacheLayer

logger = get_logger(__name__)

PASS = "pass"
WARN = "warn"
FAIL = "fail"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

DATABASE_CHECK_TIMEOUT = 3.0
_READINESS_KEY = "_health_check_"


@dataclass
class CheckResult:
    status: str
    response_time_ms: Optional[int] = None
    message: Optional[str] = None


@dataclass
class DependencyCheck:
    ready: bool
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass
class HealthReport:
    status: str
    timestamp: str
    version: str
    uptime: int
    checks: Dict[str, CheckResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReadinessReport:
    ready: bool
    timestamp: str
    checks: Dict[str, DependencyCheck] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def overall_status(checks: Dict[str, CheckResult]) -> str:
    """Reduce check outcomes: a failed database is fatal, anything else short of pass degrades."""

    database = checks.get("database")
    if database is not None and database.status == FAIL:
        return UNHEALTHY
    if any(check.status in (WARN, FAIL) for check in checks.values()):
        return DEGRADED
    return HEALTHY


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthAggregator:
    def __init__(
        self,
        store: Any,
        cache: CacheLayer,
        *,
        version: str,
        redis_required: bool = False,
        database_timeout: float = DATABASE_CHECK_TIMEOUT,
    ) -> None:
        self.store = store
        self.cache = cache
        self.version = version
        self.redis_required = redis_required
        self.database_timeout = database_timeout
        self._started = time.monotonic()

    @property
    def uptime(self) -> int:
        return int(time.monotonic() - self._started)

    async def check_database(self) -> CheckResult:
        start = time.monotonic()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.store.verify_connection),
                timeout=self.database_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("health_database_timeout", timeout=self.database_timeout)
            return CheckResult(FAIL, _elapsed_ms(start), "Database check timed out")
        except Exception as exc:
            logger.warning("health_database_failed", error=str(exc))
            return CheckResult(FAIL, _elapsed_ms(start), str(exc) or "Database connection failed")
        return CheckResult(PASS, _elapsed_ms(start))

    async def check_redis(self) -> CheckResult:
        if not self.cache.configured:
            return CheckResult(WARN, message="Redis not configured")
        start = time.monotonic()
        if await self.cache.ping():
            return CheckResult(PASS, _elapsed_ms(start))
        return CheckResult(WARN, _elapsed_ms(start), "Redis not available")

    async def report(self) -> HealthReport:
        database, redis = await asyncio.gather(self.check_database(), self.check_redis())
        checks = {"database": database, "redis": redis}
        status = overall_status(checks)
        if status != HEALTHY:
            logger.info("health_not_healthy", status=status, cache=self.cache.status())
        return HealthReport(
            status=status,
            timestamp=_now_iso(),
            version=self.version,
            uptime=self.uptime,
            checks=checks,
        )

    async def _redis_ready(self) -> DependencyCheck:
        start = time.monotonic()
        if not self.cache.configured:
            return DependencyCheck(
                ready=not self.redis_required,
                response_time_ms=_elapsed_ms(start),
                error="Redis required but not configured" if self.redis_required else None,
            )
        stamp = int(time.time())
        written = await self.cache.set(_READINESS_KEY, stamp, ttl=10)
        value = await self.cache.get(_READINESS_KEY) if written else None
        if value is None:
            return DependencyCheck(
                ready=not self.redis_required,
                response_time_ms=_elapsed_ms(start),
                error="Redis read/write failed",
            )
        return DependencyCheck(ready=True, response_time_ms=_elapsed_ms(start))

    async def readiness(self) -> ReadinessReport:
        database, redis = await asyncio.gather(self.check_database(), self._redis_ready())
        db_check = DependencyCheck(
            ready=database.status == PASS,
            response_time_ms=database.response_time_ms,
            error=database.message,
        )
        return ReadinessReport(
            ready=db_check.ready and redis.ready,
            timestamp=_now_iso(),
            checks={"database": db_check, "redis": redis},
        )


__all__ = [
    "CheckResult",
    "DependencyCheck",
    "HealthReport",
    "ReadinessReport",
    "HealthAggregator",
    "overall_status",
]
