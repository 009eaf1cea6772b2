# chatpush/infra/health_checks_async.py
"""
Readiness checks behind GET /ready and GET /health/detailed.

Critical checks (the database) decide readiness; non-critical ones (the
job backlog) can only degrade the overall status.
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict

from chatpush.infra.db_async import get_pool
from chatpush.infra.logging_config import get_logger
from chatpush.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)

REQUIRED_TABLES = ("communities", "users", "messages", "jobs")
SLOW_QUERY_SECONDS = 1.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _result(status: HealthStatus, details: str, **extra: Any) -> Dict[str, Any]:
    return {"status": status, "details": details, **extra}


class AsyncHealthCheck:
    name = "base"
    critical = True

    async def check(self) -> Dict[str, Any]:
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Pool answers and every table the dispatcher reads exists."""

    name = "database"

    async def check(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = await conn.fetchval(
                    "SELECT array_agg(t) FROM unnest($1::text[]) AS t WHERE to_regclass(t) IS NULL",
                    list(REQUIRED_TABLES),
                )
        except Exception as exc:
            logger.error(f"Database health check failed: {exc}")
            return _result(HealthStatus.UNHEALTHY, "Database connection failed", error=str(exc)[:200])

        elapsed = time.monotonic() - started
        if missing:
            return _result(HealthStatus.UNHEALTHY, "Missing required tables", error=", ".join(missing))
        if elapsed > SLOW_QUERY_SECONDS:
            return _result(HealthStatus.DEGRADED, f"Slow database response: {elapsed:.3f}s", response_time=elapsed)
        return _result(HealthStatus.HEALTHY, "Database operational", response_time=elapsed)


class AsyncJobQueueHealthCheck(AsyncHealthCheck):
    """Pending or failed jobs above the threshold degrade the service."""

    name = "job_queue"
    critical = False

    def __init__(self, repo: AsyncPostgresJobRepository | None = None, backlog_threshold: int = 1000):
        self._repo = repo or AsyncPostgresJobRepository()
        self._backlog_threshold = backlog_threshold

    async def check(self) -> Dict[str, Any]:
        try:
            counts = await self._repo.count_by_status()
        except Exception as exc:
            logger.error(f"Job queue health check failed: {exc}")
            return _result(HealthStatus.DEGRADED, "Job queue check failed", error=str(exc)[:200])

        backlog = max(counts.get("pending", 0), counts.get("failed", 0))
        if backlog > self._backlog_threshold:
            return _result(HealthStatus.DEGRADED, "Job backlog above threshold", jobs=counts)
        return _result(HealthStatus.HEALTHY, "Job queue operational", jobs=counts)


class AsyncHealthChecker:

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        if checks is None:
            checks = [AsyncDatabaseHealthCheck(), AsyncJobQueueHealthCheck()]
        self.checks = checks

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """{"status": overall, "checks": {name: result}, "timestamp": epoch seconds}"""
        selected = [c for c in self.checks if c.critical or include_non_critical]
        results = await asyncio.gather(*(c.check() for c in selected))

        overall = HealthStatus.HEALTHY
        for check, result in zip(selected, results):
            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall == HealthStatus.HEALTHY:
                overall = HealthStatus.DEGRADED

        return {
            "status": overall.value,
            "checks": {c.name: r for c, r in zip(selected, results)},
            "timestamp": time.time(),
        }


_async_health_checker: AsyncHealthChecker | None = None


def get_async_health_checker() -> AsyncHealthChecker:
    global _async_health_checker
    if _async_health_checker is None:
        _async_health_checker = AsyncHealthChecker()
    return _async_health_checker
