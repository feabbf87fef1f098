"""
Service health check — deep probe for the process's own dependencies.

Checks:
    • Database connectivity (only when STORAGE_BACKEND=sql)
    • Cache connectivity (Redis, optional)
    • Delivery providers (aggregate of the HealthMonitor)

This is the *service* health used by /health and /health/ready. The
delivery-level view (per provider, per channel) lives at
/api/v1/delivery-metrics/health.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.delivery.engine import DeliveryEngine

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


_start_time = time.monotonic()


async def check_database(engine: "DeliveryEngine") -> ComponentHealth:
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    if engine.sql_engine is None:
        comp.message = "In-memory storage"
        comp.details = {"backend": "memory"}
        return comp
    try:
        async with engine.sql_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "Connection pool available"
        comp.details = {"backend": "sql", "url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    """Redis only backs the metrics cache, so an outage degrades, never fails."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if not settings.REDIS_ENABLED:
        comp.message = "Cache disabled"
        return comp
    if await ping_redis():
        comp.message = "Cache available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_providers(engine: "DeliveryEngine") -> ComponentHealth:
    comp = ComponentHealth(name="providers")
    start = time.monotonic()
    snapshot = engine.health.get_system_health()
    summary = snapshot.to_dict()
    summary.pop("providers", None)
    comp.details = summary
    comp.message = f"Delivery health {snapshot.status.value}"
    if snapshot.status.value == "critical":
        comp.status = HealthStatus.UNHEALTHY
    elif snapshot.status.value != "healthy":
        comp.status = HealthStatus.DEGRADED
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(engine: Optional["DeliveryEngine"] = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_redis())
    if engine is not None:
        report.components.append(await check_database(engine))
        report.components.append(await check_providers(engine))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
