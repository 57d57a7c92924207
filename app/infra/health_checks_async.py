# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any, Iterable
from enum import Enum

from app.infra.circuit_breaker import CircuitBreaker
from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("jobs", "bids", "vendors", "commission_charges", "outbox")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """Return a dict with 'status', 'details' and optionally 'error'"""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Pool answers a query and every dispatch table exists"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.perf_counter()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}",
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}",
                    }

                duration = time.perf_counter() - start
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration,
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "response_time": duration,
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }


class NotificationBreakerHealthCheck(AsyncHealthCheck):
    """Degraded while any notification channel's breaker is open"""

    def __init__(self, breakers: Iterable[CircuitBreaker]):
        super().__init__("notifications", critical=False)
        self.breakers = list(breakers)

    async def check(self) -> Dict[str, Any]:
        states = [b.snapshot() for b in self.breakers]
        open_names = [s["name"] for s in states if s["state"] == CircuitBreaker.OPEN]
        if open_names:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Breaker open: {', '.join(open_names)} (messages go to outbox)",
                "breakers": states,
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Notification channels accepting traffic",
            "breakers": states,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [AsyncDatabaseHealthCheck()]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...}, "timestamp": float}
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        return {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time(),
        }
