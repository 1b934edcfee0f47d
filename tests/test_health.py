"""Tests for health aggregation and the /health endpoints."""

import time

import pytest
from fastapi.testclient import TestClient

from hedgeco.app import create_app
from hedgeco.config import Settings
from hedgeco.service.health import (
    CheckResult,
    HealthAggregator,
    overall_status,
)
from hedgeco.service.runtime import Runtime
from hedgeco.storage.cache import NullCache
from hedgeco.storage.memory import MemoryStore


class StubCache(NullCache):
    def __init__(self, reachable: bool):
        self.reachable = reachable
        self.data = {}

    configured = True

    async def ping(self):
        return self.reachable

    async def set(self, key, value, ttl=None):
        if not self.reachable:
            return False
        self.data[key] = value
        return True

    async def get(self, key):
        return self.data.get(key) if self.reachable else None


class DownStore(MemoryStore):
    def verify_connection(self):
        raise ConnectionError("database is down")


class SlowStore(MemoryStore):
    def verify_connection(self):
        time.sleep(0.5)


@pytest.mark.parametrize(
    "database,redis,expected",
    [
        ("pass", "pass", "healthy"),
        ("pass", "warn", "degraded"),
        ("pass", "fail", "degraded"),
        ("fail", "pass", "unhealthy"),
        ("fail", "warn", "unhealthy"),
        ("fail", "fail", "unhealthy"),
    ],
)
def test_overall_status_table(database, redis, expected):
    checks = {"database": CheckResult(database), "redis": CheckResult(redis)}
    assert overall_status(checks) == expected


async def test_report_without_redis_is_degraded():
    aggregator = HealthAggregator(MemoryStore(), NullCache(), version="1.2.3")

    report = await aggregator.report()

    assert report.status == "degraded"
    assert report.version == "1.2.3"
    assert report.uptime >= 0
    assert report.checks["redis"].status == "warn"
    assert report.checks["redis"].message == "Redis not configured"
    assert report.checks["database"].status == "pass"


async def test_report_with_reachable_redis_is_healthy():
    aggregator = HealthAggregator(MemoryStore(), StubCache(True), version="1")

    report = await aggregator.report()

    assert report.status == "healthy"
    assert report.checks["redis"].status == "pass"


async def test_unreachable_redis_warns():
    aggregator = HealthAggregator(MemoryStore(), StubCache(False), version="1")

    report = await aggregator.report()

    assert report.status == "degraded"
    assert report.checks["redis"].message == "Redis not available"


async def test_database_failure_is_unhealthy():
    aggregator = HealthAggregator(DownStore(), StubCache(True), version="1")

    report = await aggregator.report()

    assert report.status == "unhealthy"
    assert report.checks["database"].status == "fail"
    assert "database is down" in report.checks["database"].message


async def test_database_check_is_time_bounded():
    aggregator = HealthAggregator(
        SlowStore(), StubCache(True), version="1", database_timeout=0.05
    )

    check = await aggregator.check_database()

    assert check.status == "fail"
    assert check.message == "Database check timed out"


async def test_readiness_tolerates_missing_redis_unless_required():
    optional = HealthAggregator(MemoryStore(), NullCache(), version="1")
    required = HealthAggregator(MemoryStore(), NullCache(), version="1", redis_required=True)

    assert (await optional.readiness()).ready is True
    report = await required.readiness()
    assert report.ready is False
    assert report.checks["redis"].error == "Redis required but not configured"


async def test_readiness_round_trips_through_redis():
    cache = StubCache(True)
    aggregator = HealthAggregator(MemoryStore(), cache, version="1", redis_required=True)

    report = await aggregator.readiness()

    assert report.ready is True
    assert "_health_check_" in cache.data


def _client(store=None, cache=None) -> TestClient:
    settings = Settings(use_memory_store=True, cookie_secure=False, app_version="9.9.9")
    runtime = Runtime(settings, store=store or MemoryStore(), cache=cache or NullCache())
    return TestClient(create_app(runtime=runtime))


NO_CACHE = "no-cache, no-store, must-revalidate"


def test_get_health_returns_status_only():
    with _client() as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "degraded"}
    assert response.headers["Cache-Control"] == NO_CACHE


def test_get_health_verbose_returns_report():
    with _client(cache=StubCache(True)) as client:
        response = client.get("/health", params={"verbose": "true"})

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["version"] == "9.9.9"
    assert set(body["checks"]) == {"database", "redis"}
    assert body["checks"]["database"]["status"] == "pass"
    assert "timestamp" in body and "uptime" in body


def test_get_health_unhealthy_is_503():
    with _client(store=DownStore()) as client:
        response = client.get("/health")

    assert response.status_code == 503
    assert response.json() == {"status": "unhealthy"}
    assert response.headers["Cache-Control"] == NO_CACHE


def test_head_health_checks_database_only():
    with _client(cache=StubCache(False)) as client:
        ok = client.head("/health")
    with _client(store=DownStore()) as client:
        down = client.head("/health")

    assert ok.status_code == 200
    assert ok.content == b""
    assert down.status_code == 503


def test_ready_endpoint():
    with _client() as client:
        response = client.get("/health/ready")

    body = response.json()
    assert response.status_code == 200
    assert body["ready"] is True
    assert body["checks"]["database"]["ready"] is True
    assert response.headers["Cache-Control"] == NO_CACHE


@pytest.mark.parametrize("verbose", ["banana", "1", "false", ""])
def test_get_health_treats_other_verbose_values_as_terse(verbose):
    with _client() as client:
        response = client.get("/health", params={"verbose": verbose})

    assert response.status_code == 200
    assert response.json() == {"status": "degraded"}


def test_get_health_verbose_is_case_insensitive():
    with _client() as client:
        response = client.get("/health", params={"verbose": "TRUE"})

    assert set(response.json()) == {"status", "timestamp", "version", "uptime", "checks"}
    assert response.json()["checks"]["redis"]["message"] == "Redis not configured"
