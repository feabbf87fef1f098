"""
health_monitor.py — Rolling health per (provider, channel) and the aggregate view.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE (per provider, channel)
═══════════════════════════════════════════════════════════════════════════

    healthy ──► degraded      N consecutive transient failures      (N=3)
                              OR window failure rate > soft         (30%)

    degraded ──► down         M consecutive failures                (M=5)
                              OR window failure rate > hard         (70%)
                              OR last K synthetic probes failed     (K=3)

    down ──► degraded         first success (traffic or probe)
    degraded ──► healthy      R consecutive successes               (R=2)

Guards:
    • An outcome moves the status at most one step, so down is only
      reachable from degraded.
    • Every down transition also needs consecutive_failures ≥ the down
      floor (HEALTH_DOWN_FLOOR_FAILURES), so a burst inside a busy window
      cannot take a provider down on rate alone.
    • Rate-based transitions need ≥ HEALTH_MIN_SAMPLES outcomes in the
      rolling window (W=5 min).
    • Permanent errors (bad recipient) say nothing about the provider and
      only refresh last_check_at.
    • Probes move the consecutive counters but are kept out of the traffic
      failure rate.

═══════════════════════════════════════════════════════════════════════════
AGGREGATE SYSTEM HEALTH
═══════════════════════════════════════════════════════════════════════════

    critical   every provider of some channel is down
    warning    any provider down, or more than half degraded
    degraded   any provider degraded
    healthy    otherwise

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

Each key has its own asyncio.Lock. An update computes a new frozen
ProviderHealth under the lock and swaps it into the table, so readers
(which take no lock) always see a whole record. Transitions are handed to
listeners on a background task, one transition at a time and in the order
they happened, so a slow listener never holds up the delivery that caused
the change. drain() waits for everything queued so far.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from backend.app.core.config import Settings, settings as default_settings
from backend.app.delivery.models import (
    DeliveryChannel,
    ErrorKind,
    HealthKey,
    HealthTransition,
    ProviderHealth,
    ProviderStatus,
    SystemHealthSnapshot,
    SystemHealthStatus,
)

logger = logging.getLogger(__name__)

HealthListener = Callable[[HealthTransition], Awaitable[None]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthThresholds:
    degrade_after_failures: int = 3
    down_after_failures: int = 5
    down_floor_failures: int = 3
    soft_failure_rate: float = 0.30
    hard_failure_rate: float = 0.70
    window_minutes: float = 5.0
    min_samples: int = 5
    probe_failures_for_down: int = 3
    recover_after_successes: int = 2

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "HealthThresholds":
        cfg = cfg or default_settings
        return cls(
            degrade_after_failures=cfg.HEALTH_DEGRADE_AFTER_FAILURES,
            down_after_failures=cfg.HEALTH_DOWN_AFTER_FAILURES,
            down_floor_failures=cfg.HEALTH_DOWN_FLOOR_FAILURES,
            soft_failure_rate=cfg.HEALTH_SOFT_FAILURE_RATE,
            hard_failure_rate=cfg.HEALTH_HARD_FAILURE_RATE,
            window_minutes=cfg.HEALTH_WINDOW_MINUTES,
            min_samples=cfg.HEALTH_MIN_SAMPLES,
            probe_failures_for_down=cfg.HEALTH_PROBE_FAILURES_FOR_DOWN,
            recover_after_successes=cfg.HEALTH_RECOVER_AFTER_SUCCESSES,
        )


class HealthMonitor:
    """Single writer per (provider, channel) key; lock-free readers."""

    def __init__(
        self,
        thresholds: Optional[HealthThresholds] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.thresholds = thresholds or HealthThresholds.from_settings()
        self._clock = clock or _utcnow
        self._records: Dict[HealthKey, ProviderHealth] = {}
        self._samples: Dict[HealthKey, Deque[Tuple[datetime, bool]]] = {}
        self._locks: Dict[HealthKey, asyncio.Lock] = {}
        self._listeners: List[HealthListener] = []
        self._pending: Set[asyncio.Task] = set()
        self._tail: Optional[asyncio.Task] = None

    # ── Registration ─────────────────────────────────────────────────────

    def register(self, provider_id: str, channel: DeliveryChannel, priority: int = 100) -> ProviderHealth:
        key = (provider_id, channel)
        if key not in self._records:
            self._records[key] = ProviderHealth(
                provider_id=provider_id, channel=channel, priority=priority,
            )
            self._samples[key] = deque()
            self._locks[key] = asyncio.Lock()
        return self._records[key]

    def subscribe(self, listener: HealthListener) -> None:
        """Register an async callback invoked on every status change."""
        self._listeners.append(listener)

    # ── Writers ──────────────────────────────────────────────────────────

    async def record_outcome(
        self,
        provider_id: str,
        channel: DeliveryChannel,
        success: bool,
        error_kind: Optional[ErrorKind] = None,
    ) -> ProviderHealth:
        """Feed one delivery attempt outcome into the state machine."""
        return await self._update(provider_id, channel, success, error_kind, probe=False)

    async def record_probe(self, provider_id: str, channel: DeliveryChannel, success: bool) -> ProviderHealth:
        """Feed one synthetic probe result into the state machine."""
        return await self._update(provider_id, channel, success, None, probe=True)

    async def _update(
        self,
        provider_id: str,
        channel: DeliveryChannel,
        success: bool,
        error_kind: Optional[ErrorKind],
        *,
        probe: bool,
    ) -> ProviderHealth:
        key = (provider_id, channel)
        self.register(provider_id, channel)
        now = self._clock()

        async with self._locks[key]:
            current = self._records[key]
            samples = self._samples[key]

            if not success and error_kind == ErrorKind.PERMANENT:
                updated = replace(current, last_check_at=now)
            else:
                if not probe:
                    samples.append((now, success))
                rate, count = self._window_rate(samples, now)
                if success:
                    updated = self._on_success(current, now)
                else:
                    updated = self._on_failure(current, now, probe, rate, count)
                updated = replace(updated, failure_rate=rate, sample_count=count)
            self._records[key] = updated

        if updated.status != current.status:
            self._publish(current, updated, now)
        return updated

    def _window_rate(self, samples: Deque[Tuple[datetime, bool]], now: datetime) -> Tuple[float, int]:
        cutoff = now - timedelta(minutes=self.thresholds.window_minutes)
        while samples and samples[0][0] < cutoff:
            samples.popleft()
        count = len(samples)
        if not count:
            return 0.0, 0
        failures = sum(1 for _, ok in samples if not ok)
        return failures / count, count

    def _on_success(self, rec: ProviderHealth, now: datetime) -> ProviderHealth:
        successes = rec.consecutive_successes + 1
        status = rec.status
        if status == ProviderStatus.DOWN:
            status = ProviderStatus.DEGRADED
        elif status == ProviderStatus.DEGRADED and successes >= self.thresholds.recover_after_successes:
            status = ProviderStatus.HEALTHY
        return replace(
            rec,
            status=status,
            consecutive_failures=0,
            consecutive_successes=successes,
            consecutive_probe_failures=0,
            last_success_at=now,
            last_check_at=now,
        )

    def _on_failure(
        self,
        rec: ProviderHealth,
        now: datetime,
        probe: bool,
        rate: float,
        count: int,
    ) -> ProviderHealth:
        t = self.thresholds
        failures = rec.consecutive_failures + 1
        probe_failures = rec.consecutive_probe_failures + 1 if probe else rec.consecutive_probe_failures
        rated = count >= t.min_samples

        # one step per outcome: healthy never goes straight to down
        status = rec.status
        if status == ProviderStatus.HEALTHY:
            if failures >= t.degrade_after_failures or (rated and rate > t.soft_failure_rate):
                status = ProviderStatus.DEGRADED
        elif status == ProviderStatus.DEGRADED and failures >= t.down_floor_failures:
            if (
                failures >= t.down_after_failures
                or (rated and rate > t.hard_failure_rate)
                or probe_failures >= t.probe_failures_for_down
            ):
                status = ProviderStatus.DOWN

        return replace(
            rec,
            status=status,
            consecutive_failures=failures,
            consecutive_successes=0,
            consecutive_probe_failures=probe_failures,
            last_failure_at=now,
            last_check_at=now,
        )

    def _publish(self, previous: ProviderHealth, current: ProviderHealth, now: datetime) -> None:
        log = logger.warning if current.status != ProviderStatus.HEALTHY else logger.info
        log(
            "[HEALTH] %s/%s %s → %s (consecutive_failures=%d, rate=%.0f%% of %d)",
            current.provider_id, current.channel.value,
            previous.status.value, current.status.value,
            current.consecutive_failures, current.failure_rate * 100, current.sample_count,
            extra={"provider": current.provider_id, "channel": current.channel.value},
        )
        transition = HealthTransition(
            provider_id=current.provider_id,
            channel=current.channel,
            previous=previous.status,
            current=current.status,
            record=current,
            at=now,
        )
        if not self._listeners:
            return
        task = asyncio.create_task(self._notify(transition, self._tail))
        self._tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _notify(self, transition: HealthTransition, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        for listener in list(self._listeners):
            try:
                await listener(transition)
            except Exception:
                logger.exception(
                    "Health listener failed for %s/%s", transition.provider_id, transition.channel.value,
                )

    async def drain(self) -> None:
        """Wait until every queued transition has reached the listeners."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Readers ──────────────────────────────────────────────────────────

    def get(self, provider_id: str, channel: DeliveryChannel) -> Optional[ProviderHealth]:
        return self._records.get((provider_id, channel))

    def get_health(
        self,
        provider_id: Optional[str] = None,
        channel: Optional[DeliveryChannel] = None,
    ) -> List[ProviderHealth]:
        records = [
            r for r in self._records.values()
            if (provider_id is None or r.provider_id == provider_id)
            and (channel is None or r.channel == channel)
        ]
        return sorted(records, key=lambda r: (r.channel.value, r.priority, r.provider_id))

    def get_system_health(self) -> SystemHealthSnapshot:
        records = self.get_health()
        return SystemHealthSnapshot(
            status=aggregate_status(records),
            providers=records,
            generated_at=self._clock(),
        )


def aggregate_status(records: List[ProviderHealth]) -> SystemHealthStatus:
    if not records:
        return SystemHealthStatus.HEALTHY

    by_channel: Dict[DeliveryChannel, List[ProviderHealth]] = {}
    for r in records:
        by_channel.setdefault(r.channel, []).append(r)
    if any(all(r.status == ProviderStatus.DOWN for r in group) for group in by_channel.values()):
        return SystemHealthStatus.CRITICAL

    down = sum(1 for r in records if r.status == ProviderStatus.DOWN)
    degraded = sum(1 for r in records if r.status == ProviderStatus.DEGRADED)
    if down or degraded > len(records) / 2:
        return SystemHealthStatus.WARNING
    if degraded:
        return SystemHealthStatus.DEGRADED
    return SystemHealthStatus.HEALTHY
