"""
alert_engine.py — Threshold evaluation and the alert lifecycle.

═══════════════════════════════════════════════════════════════════════════
TRIGGERS
═══════════════════════════════════════════════════════════════════════════

    Type                    Severity   Condition
    ─────────────────────   ────────   ─────────────────────────────────────
    system_health           critical   aggregate health is critical
    system_health           warning    aggregate health is warning
    delivery_failure_rate   critical   15-min failure rate ≥ 50%, ≥ 10 samples
    delivery_failure_rate   warning    15-min failure rate ≥ 25%, ≥ 10 samples
    provider_degraded       info       one provider degraded, all others healthy

Evaluated on every health transition (pushed by the HealthMonitor) and on
the periodic tick. A condition that clears auto-resolves its open alert
(actor "system").

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    active ──acknowledge──► acknowledged ──resolve──► resolved
      │                                                  ▲
      ├──resolve─────────────────────────────────────────┘
      └──escalate (manual, or automatic every 10 min while still active)
            level 1 → 2 → 3 (cap; level 3 needs a human)

    • One open alert per (type, affected services). A repeat breach
      updates its metrics and raises its severity to the worst seen.
    • acknowledge / resolve / escalate on a resolved alert is an
      invalid_transition error; a new breach opens a fresh alert.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

No engine-wide lock. Every write loads the alert, applies the change to
that copy and stores it with a version check (see alert_store); a write
that loses the race reloads and re-applies, so two actors never overwrite
each other. Automatic escalation re-checks "still active and due" on the
fresh copy, which is what keeps it from bumping an alert an operator has
just acknowledged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import InvalidTransitionError, NotFoundError, StorageError
from backend.app.delivery.alert_store import AlertConflict, AlertStore, InMemoryAlertStore
from backend.app.delivery.health_monitor import HealthMonitor
from backend.app.delivery.ledger import DeliveryLedger
from backend.app.delivery.models import (
    Alert,
    AlertMetrics,
    AlertSeverity,
    AlertStatus,
    AlertType,
    HealthTransition,
    ProviderHealth,
    ProviderStatus,
    SystemHealthSnapshot,
    SystemHealthStatus,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
ALL_SERVICES = ["all"]

# attempts before a write that keeps losing the version race gives up
_MAX_WRITE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AlertThresholds:
    window_minutes: float = 15.0
    min_samples: int = 10
    critical_failure_rate: float = 0.50
    warning_failure_rate: float = 0.25
    escalation_minutes: float = 10.0
    max_escalation_level: int = 3

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "AlertThresholds":
        cfg = cfg or default_settings
        return cls(
            window_minutes=cfg.ALERT_WINDOW_MINUTES,
            min_samples=cfg.ALERT_MIN_SAMPLES,
            critical_failure_rate=cfg.ALERT_CRITICAL_FAILURE_RATE,
            warning_failure_rate=cfg.ALERT_WARNING_FAILURE_RATE,
            escalation_minutes=cfg.ALERT_ESCALATION_MINUTES,
            max_escalation_level=cfg.ALERT_MAX_ESCALATION_LEVEL,
        )


def provider_service(record: ProviderHealth) -> str:
    return f"{record.provider_id}:{record.channel.value}"


class AlertEngine:
    """Creates, escalates and resolves alerts from health and ledger signals."""

    def __init__(
        self,
        health: HealthMonitor,
        ledger: DeliveryLedger,
        store: Optional[AlertStore] = None,
        *,
        thresholds: Optional[AlertThresholds] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.health = health
        self.ledger = ledger
        self.store = store or InMemoryAlertStore()
        self.thresholds = thresholds or AlertThresholds.from_settings()
        self._clock = clock or _utcnow
        health.subscribe(self.on_health_transition)

    # ═══════════════════════════════════════════════════════════════════
    # Raising / auto-resolving
    # ═══════════════════════════════════════════════════════════════════

    async def raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        description: str,
        affected_services: List[str],
        metrics: Optional[AlertMetrics] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Alert, bool]:
        """Create an alert, or update the open one for the same condition. Returns (alert, created)."""
        now = self._clock()
        for _ in range(_MAX_WRITE_ATTEMPTS):
            existing = await self.store.find_open(alert_type, affected_services)
            if existing is not None:
                previous = existing.severity
                if severity.rank > existing.severity.rank:
                    existing.severity = severity
                    existing.title = title
                existing.description = description
                existing.metrics = metrics or existing.metrics
                existing.context = {**existing.context, **(context or {})}
                existing.updated_at = now
                try:
                    await self.store.update(existing)
                except AlertConflict:
                    continue
                if existing.severity != previous:
                    logger.warning(
                        "[ALERT] %s severity %s → %s",
                        existing.alert_id, previous.value, existing.severity.value,
                        extra={"alert_id": existing.alert_id},
                    )
                return existing, False

            alert = Alert(
                alert_type=alert_type,
                severity=severity,
                title=title,
                description=description,
                affected_services=sorted(set(affected_services)),
                metrics=metrics or AlertMetrics(),
                context=context or {},
                created_at=now,
                updated_at=now,
            )
            try:
                await self.store.add(alert)
            except AlertConflict:
                # opened concurrently; next pass updates that one instead
                continue

            log = logger.error if severity == AlertSeverity.CRITICAL else logger.warning
            log(
                "[ALERT] %s raised: [%s] %s (%s)",
                alert.alert_id, severity.value.upper(), title, ", ".join(alert.affected_services),
                extra={"alert_id": alert.alert_id},
            )
            return alert, True
        raise StorageError("raise_alert", f"{alert_type.value} kept conflicting with concurrent writers")

    async def auto_resolve(self, alert_type: AlertType, affected_services: List[str], reason: str) -> Optional[Alert]:
        """Resolve the open alert for a condition that has cleared, if any."""
        now = self._clock()
        for _ in range(_MAX_WRITE_ATTEMPTS):
            alert = await self.store.find_open(alert_type, affected_services)
            if alert is None:
                return None
            self._apply_resolve(alert, SYSTEM_ACTOR, reason, None, now)
            alert.auto_resolved = True
            try:
                await self.store.update(alert)
            except AlertConflict:
                continue
            logger.info("[ALERT] %s auto-resolved: %s", alert.alert_id, reason, extra={"alert_id": alert.alert_id})
            return alert
        raise StorageError("auto_resolve", f"{alert_type.value} kept conflicting with concurrent writers")

    # ═══════════════════════════════════════════════════════════════════
    # Evaluation
    # ═══════════════════════════════════════════════════════════════════

    async def on_health_transition(self, transition: HealthTransition) -> None:
        await self.evaluate_health(self.health.get_system_health())

    async def evaluate_health(self, snapshot: SystemHealthSnapshot) -> None:
        await self._evaluate_system(snapshot)
        await self._evaluate_providers(snapshot.providers)

    async def _evaluate_system(self, snapshot: SystemHealthSnapshot) -> None:
        status = snapshot.status
        down = [provider_service(p) for p in snapshot.providers if p.status == ProviderStatus.DOWN]
        degraded = [provider_service(p) for p in snapshot.providers if p.status == ProviderStatus.DEGRADED]
        context = {"system_status": status.value, "down": down, "degraded": degraded}

        if status == SystemHealthStatus.CRITICAL:
            await self.raise_alert(
                AlertType.SYSTEM_HEALTH, AlertSeverity.CRITICAL,
                "Delivery system critical",
                f"Every provider of at least one channel is down ({', '.join(down)}).",
                ALL_SERVICES, context=context,
            )
        elif status == SystemHealthStatus.WARNING:
            await self.raise_alert(
                AlertType.SYSTEM_HEALTH, AlertSeverity.WARNING,
                "Delivery system degraded",
                f"Providers down: {', '.join(down) or 'none'}; degraded: {', '.join(degraded) or 'none'}.",
                ALL_SERVICES, context=context,
            )
        else:
            await self.auto_resolve(
                AlertType.SYSTEM_HEALTH, ALL_SERVICES, f"System health back to {status.value}",
            )

    async def _evaluate_providers(self, providers: List[ProviderHealth]) -> None:
        for record in providers:
            service = provider_service(record)
            others = [p for p in providers if p.key != record.key]
            if record.status == ProviderStatus.HEALTHY:
                await self.auto_resolve(
                    AlertType.PROVIDER_DEGRADED, [service], f"{service} healthy again",
                )
            elif (
                record.status == ProviderStatus.DEGRADED
                and all(p.status == ProviderStatus.HEALTHY for p in others)
            ):
                await self.raise_alert(
                    AlertType.PROVIDER_DEGRADED, AlertSeverity.INFO,
                    f"Provider {service} degraded",
                    f"{service} is degraded ({record.consecutive_failures} consecutive failures, "
                    f"{record.failure_rate * 100:.0f}% failure rate); other providers healthy.",
                    [service],
                    metrics=AlertMetrics(
                        failure_rate=round(record.failure_rate * 100, 1),
                        error_count=record.consecutive_failures,
                        sample_count=record.sample_count,
                    ),
                    context={"provider_id": record.provider_id, "channel": record.channel.value},
                )

    async def evaluate_failure_rate(self, stats: Optional[Tuple[int, int]] = None) -> Optional[Alert]:
        t = self.thresholds
        if stats is None:
            stats = await self.ledger.failure_stats(self._clock() - timedelta(minutes=t.window_minutes))
        failed, total = stats
        if total < t.min_samples:
            return None

        rate = failed / total
        time_range = f"{t.window_minutes:g} minutes"
        if rate >= t.critical_failure_rate:
            severity, threshold = AlertSeverity.CRITICAL, t.critical_failure_rate
        elif rate >= t.warning_failure_rate:
            severity, threshold = AlertSeverity.WARNING, t.warning_failure_rate
        else:
            await self.auto_resolve(
                AlertType.DELIVERY_FAILURE_RATE, ALL_SERVICES,
                f"Failure rate back to {rate * 100:.1f}% over {time_range}",
            )
            return None

        alert, _ = await self.raise_alert(
            AlertType.DELIVERY_FAILURE_RATE, severity,
            f"High delivery failure rate: {rate * 100:.1f}%",
            f"{failed} of {total} delivery attempts failed in the last {time_range}.",
            ALL_SERVICES,
            metrics=AlertMetrics(
                failure_rate=round(rate * 100, 1),
                error_count=failed,
                time_range=time_range,
                sample_count=total,
                threshold=round(threshold * 100, 1),
            ),
        )
        return alert

    async def tick(self) -> None:
        """Periodic pass: failure rate, system health, automatic escalation."""
        snapshot = self.health.get_system_health()
        stats = await self.ledger.failure_stats(
            self._clock() - timedelta(minutes=self.thresholds.window_minutes)
        )
        await self.evaluate_failure_rate(stats)
        await self.evaluate_health(snapshot)
        await self.escalate_due()

    async def escalate_due(self) -> List[Alert]:
        """Bump every active alert left unacknowledged for a full escalation window."""
        now = self._clock()
        escalated: List[Alert] = []
        for alert in await self.store.list(AlertStatus.ACTIVE):
            if not self._escalation_due(alert, now):
                continue
            since = alert.last_escalated_at or alert.created_at
            minutes = (now - since).total_seconds() / 60
            try:
                alert, changed = await self._escalate(
                    alert.alert_id, f"Unacknowledged for {minutes:.0f} minutes", automatic=True,
                )
            except InvalidTransitionError:
                # resolved since the listing
                continue
            if changed:
                escalated.append(alert)
        return escalated

    def _escalation_due(self, alert: Alert, now: datetime) -> bool:
        if alert.status != AlertStatus.ACTIVE:
            return False
        if alert.escalation_level >= self.thresholds.max_escalation_level:
            return False
        since = alert.last_escalated_at or alert.created_at
        return now - since >= timedelta(minutes=self.thresholds.escalation_minutes)

    # ═══════════════════════════════════════════════════════════════════
    # Operator actions
    # ═══════════════════════════════════════════════════════════════════

    async def _load(self, alert_id: str) -> Alert:
        alert = await self.store.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def _mutate(self, alert_id: str, change: Callable[[Alert], bool]) -> Tuple[Alert, bool]:
        """
        Load, apply `change`, store with a version check; retry on conflict.

        `change` edits the alert in place and returns False for a no-op, or
        raises InvalidTransitionError. It runs again on a fresh copy after
        every lost race.
        """
        for _ in range(_MAX_WRITE_ATTEMPTS):
            alert = await self._load(alert_id)
            if not change(alert):
                return alert, False
            try:
                await self.store.update(alert)
            except AlertConflict:
                logger.debug("[ALERT] %s changed concurrently, retrying", alert_id)
                continue
            return alert, True
        raise StorageError("alert_update", f"{alert_id} kept conflicting with concurrent writers")

    async def acknowledge(self, alert_id: str, actor: str, notes: Optional[str] = None) -> Alert:
        """active → acknowledged. Re-acknowledging is a no-op; resolved is an error."""
        now = self._clock()

        def change(alert: Alert) -> bool:
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidTransitionError("alert", alert_id, alert.status.value, "acknowledge")
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return False
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_by = actor
            alert.acknowledged_at = now
            alert.acknowledge_notes = notes
            alert.updated_at = now
            return True

        alert, changed = await self._mutate(alert_id, change)
        if changed:
            logger.info("[ALERT] %s acknowledged by %s", alert_id, actor, extra={"alert_id": alert_id})
        return alert

    @staticmethod
    def _apply_resolve(alert: Alert, actor: str, resolution: str, notes: Optional[str], now: datetime) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_by = actor
        alert.resolved_at = now
        alert.resolution = resolution
        alert.resolution_notes = notes
        alert.updated_at = now

    async def resolve(
        self,
        alert_id: str,
        actor: str,
        resolution: str,
        notes: Optional[str] = None,
    ) -> Alert:
        """Any open state → resolved. Stops further escalation."""
        now = self._clock()

        def change(alert: Alert) -> bool:
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidTransitionError("alert", alert_id, alert.status.value, "resolve")
            self._apply_resolve(alert, actor, resolution, notes, now)
            return True

        alert, _ = await self._mutate(alert_id, change)
        logger.info("[ALERT] %s resolved by %s: %s", alert_id, actor, resolution, extra={"alert_id": alert_id})
        return alert

    async def escalate(self, alert_id: str, reason: str, *, automatic: bool = False) -> Alert:
        """Raise the escalation level by one, capped at the maximum."""
        alert, _ = await self._escalate(alert_id, reason, automatic=automatic)
        return alert

    async def _escalate(self, alert_id: str, reason: str, *, automatic: bool) -> Tuple[Alert, bool]:
        now = self._clock()

        def change(alert: Alert) -> bool:
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidTransitionError("alert", alert_id, alert.status.value, "escalate")
            if automatic and not self._escalation_due(alert, now):
                return False
            if alert.escalation_level >= self.thresholds.max_escalation_level:
                return False
            previous = alert.escalation_level
            alert.escalation_level += 1
            alert.last_escalated_at = now
            alert.updated_at = now
            alert.escalation_history.append({
                "from_level": previous,
                "to_level": alert.escalation_level,
                "reason": reason,
                "automatic": automatic,
                "at": now.isoformat(),
            })
            return True

        alert, changed = await self._mutate(alert_id, change)
        if changed:
            logger.warning(
                "[ALERT] %s escalated to level %d: %s",
                alert_id, alert.escalation_level, reason, extra={"alert_id": alert_id},
            )
        return alert, changed

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    async def get_alert(self, alert_id: str) -> Alert:
        return await self._load(alert_id)

    async def list_alerts(self, status: Optional[AlertStatus] = None) -> List[Alert]:
        return await self.store.list(status)

    async def get_active(self) -> List[Alert]:
        """Open alerts (active or acknowledged), most severe first."""
        alerts = [a for a in await self.store.list() if a.is_open]
        alerts.sort(key=lambda a: (a.severity.rank, a.escalation_level, a.created_at), reverse=True)
        return alerts

    async def get_summary(self) -> Dict[str, Any]:
        alerts = await self.store.list()
        open_alerts = [a for a in alerts if a.is_open]
        return {
            "total": len(alerts),
            "open": len(open_alerts),
            "by_severity": {
                s.value: sum(1 for a in open_alerts if a.severity == s) for s in AlertSeverity
            },
            "by_status": {
                s.value: sum(1 for a in alerts if a.status == s) for s in AlertStatus
            },
            "max_escalation_level": max((a.escalation_level for a in open_alerts), default=0),
        }
