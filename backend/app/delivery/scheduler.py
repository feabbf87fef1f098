"""
scheduler.py — Background monitoring loops.

═══════════════════════════════════════════════════════════════════════════
JOBS
═══════════════════════════════════════════════════════════════════════════

1. SYNTHETIC PROBES (every PROBE_INTERVAL_SECONDS)
   - One probe per enabled (provider, channel) pair
   - Result fed to HealthMonitor.record_probe()

2. ALERT TICK (every ALERT_TICK_SECONDS)
   - Failure-rate evaluation, health evaluation, escalation sweep

Each job runs in its own asyncio task started from the application
lifespan. A failing iteration is logged and the loop keeps going.
═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List

from backend.app.delivery.alert_engine import AlertEngine
from backend.app.delivery.health_monitor import HealthMonitor
from backend.app.delivery.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class MonitoringScheduler:
    """Runs probes and alert ticks on fixed intervals."""

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthMonitor,
        alerts: AlertEngine,
        *,
        probe_interval: float = 60.0,
        tick_interval: float = 60.0,
        probes_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._health = health
        self._alerts = alerts
        self._probe_interval = probe_interval
        self._tick_interval = tick_interval
        self._probes_enabled = probes_enabled
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        if self.running:
            return
        if self._probes_enabled:
            self._tasks["probes"] = asyncio.create_task(
                self._loop("probes", self.run_probes, self._probe_interval)
            )
        self._tasks["alerts"] = asyncio.create_task(
            self._loop("alerts", self._alerts.tick, self._tick_interval)
        )
        logger.info("[SCHEDULER] Started jobs: %s", ", ".join(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("[SCHEDULER] Stopped")

    async def _loop(self, name: str, job: Callable[[], Awaitable[object]], interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[SCHEDULER] %s iteration failed", name)

    async def run_probes(self) -> List[dict]:
        """Probe every enabled (provider, channel) pair once."""
        results = []
        for adapter in self._registry.all():
            if not adapter.enabled:
                continue
            for channel in sorted(adapter.channels, key=lambda c: c.value):
                ok = await self._probe(adapter, channel)
                record = await self._health.record_probe(adapter.provider_id, channel, ok)
                results.append({
                    "provider_id": adapter.provider_id,
                    "channel": channel.value,
                    "ok": ok,
                    "status": record.status.value,
                })
        return results

    @staticmethod
    async def _probe(adapter, channel) -> bool:
        try:
            return bool(await asyncio.wait_for(adapter.probe(channel), timeout=adapter.timeout_seconds))
        except asyncio.TimeoutError:
            logger.warning("[PROBE] %s/%s timed out", adapter.provider_id, channel.value)
            return False
        except Exception as e:
            logger.warning("[PROBE] %s/%s failed: %s", adapter.provider_id, channel.value, e)
            return False
