# roadside/infra/health_checks_async.py
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional

from roadside.core.ports import DispatchStore
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("jobs", "bids", "vendors", "capabilities", "alerts")


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
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class StoreHealthCheck(AsyncHealthCheck):
    """The dispatch store answers a trivial read."""

    def __init__(self, store: DispatchStore):
        super().__init__("store", critical=True)
        self._store = store

    async def check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            await self._store.jobs.list(limit=1)
        except Exception as exc:
            logger.error("Store health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Store read failed",
                "error": str(exc)[:200],
            }

        duration = time.perf_counter() - start
        if duration > 1.0:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Slow store response: {duration:.3f}s",
                "response_time": duration,
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Store operational",
            "response_time": duration,
        }


class PostgresSchemaHealthCheck(AsyncHealthCheck):
    """Required tables exist (Postgres backend only)."""

    def __init__(self):
        super().__init__("database_schema", critical=True)

    async def check(self) -> Dict[str, Any]:
        from roadside.infra.db_resilience_async import safe_db_conn

        try:
            async with safe_db_conn() as conn:
                missing = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database schema health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }

        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing)}",
            }
        return {"status": HealthStatus.HEALTHY, "details": "Schema present"}


class UnbidMonitorHealthCheck(AsyncHealthCheck):
    """Reports whether the scanner task is alive. Never fails readiness."""

    def __init__(self, monitor: Any, expected_running: bool):
        super().__init__("unbid_monitor", critical=False)
        self._monitor = monitor
        self._expected = expected_running

    async def check(self) -> Dict[str, Any]:
        running = bool(self._monitor is not None and self._monitor.running)
        if self._expected and not running:
            return {"status": HealthStatus.DEGRADED, "details": "Monitor not running"}
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Monitor running" if running else "Monitor disabled",
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: Optional[list[AsyncHealthCheck]] = None):
        self.checks: list[AsyncHealthCheck] = list(checks or [])

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "timestamp": float
            }
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
