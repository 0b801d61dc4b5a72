"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database round-trip (SELECT 1)
    • Cache connectivity (Redis PING, when enabled)
    • Channel adapter providers
    • Background job status (retry scheduler, rate-window reaper)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.notifications.engine import NotificationEngine

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> ComponentHealth:
    """Round-trip to the notification store."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        comp.message = "Connection pool available"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    """Preference cache; losing it only costs database reads."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if not settings.CACHE_ENABLED:
        comp.message = "Cache disabled"
    elif await ping_redis():
        comp.message = "Cache available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache unreachable, reading preferences from database"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(engine: "NotificationEngine") -> ComponentHealth:
    comp = ComponentHealth(name="channels")
    status = engine.status()
    comp.details = status["channels"]
    simulated = sorted(ct for ct, provider in status["channels"].items() if provider == "simulation")
    comp.message = f"{len(status['channels'])} adapters"
    if simulated:
        comp.message += f", simulated: {', '.join(simulated)}"
    return comp


async def check_jobs(engine: "NotificationEngine") -> ComponentHealth:
    comp = ComponentHealth(name="background_jobs")
    jobs = engine.status()["jobs"]
    comp.details = {job["name"]: job for job in jobs}
    if engine.settings.SCHEDULER_ENABLED and any(job["status"] != "running" for job in jobs):
        comp.status = HealthStatus.DEGRADED
        comp.message = "Background job not running"
    else:
        comp.message = "OK" if engine.settings.SCHEDULER_ENABLED else "Disabled"
    return comp


async def run_health_check(engine: Optional["NotificationEngine"] = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    if engine is not None:
        checks = [
            check_database(engine.session_factory),
            check_redis(),
            check_channels(engine),
            check_jobs(engine),
        ]
    else:
        checks = [check_redis()]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
