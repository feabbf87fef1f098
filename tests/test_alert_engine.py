"""
test_alert_engine.py — Alert raising, deduplication, lifecycle and escalation.

Covers:
    • Failure-rate alerts from the ledger (thresholds, min samples, updates)
    • Health-driven alerts (provider_degraded, system_health) and auto-resolve
    • One open alert per (type, affected services)
    • acknowledge / resolve / escalate transitions and errors
    • Automatic escalation on the tick, capped at level 3
    • Summary and active listing
    • Concurrent writers: no lost updates, no escalation after acknowledge

Run with:
    pytest tests/test_alert_engine.py -v
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import InvalidTransitionError, NotFoundError
from backend.app.delivery.alert_engine import SYSTEM_ACTOR, AlertEngine, AlertThresholds
from backend.app.delivery.alert_store import AlertConflict, InMemoryAlertStore
from backend.app.delivery.health_monitor import HealthMonitor, HealthThresholds
from backend.app.delivery.ledger import DeliveryLedger, InMemoryLedger, RetryConfig
from backend.app.delivery.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    ErrorKind,
)

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_engine(clock=None, store=None):
    health = HealthMonitor(HealthThresholds(), clock=clock)
    ledger = DeliveryLedger(InMemoryLedger(), retry=RetryConfig(max_attempts=1, backoff_base_seconds=0))
    engine = AlertEngine(health, ledger, store or InMemoryAlertStore(), thresholds=AlertThresholds(), clock=clock)
    for pid, ch, prio in (("a", SMS, 1), ("b", SMS, 2), ("smtp", EMAIL, 1)):
        health.register(pid, ch, prio)
    return engine


async def _record(ledger: DeliveryLedger, delivered: int, failed: int) -> None:
    for i in range(delivered + failed):
        attempt = DeliveryAttempt(
            request_id=f"REQ-{i}", provider="a", channel=SMS,
            destination="+14155550123", attempt_number=1,
        )
        await ledger.record_attempt(attempt)
        ok = i < delivered
        await ledger.complete_attempt(
            attempt,
            DeliveryStatus.DELIVERED if ok else DeliveryStatus.FAILED,
            error=None if ok else "carrier error",
            error_kind=None if ok else ErrorKind.TRANSIENT,
        )


async def _fail(engine: AlertEngine, pid: str, times: int, channel=SMS) -> None:
    for _ in range(times):
        await engine.health.record_outcome(pid, channel, False, ErrorKind.TRANSIENT)
    await engine.health.drain()


async def _succeed(engine: AlertEngine, pid: str, times: int, channel=SMS) -> None:
    for _ in range(times):
        await engine.health.record_outcome(pid, channel, True)
    await engine.health.drain()


async def _raise(engine: AlertEngine, severity=AlertSeverity.WARNING, affected=None):
    alert, _ = await engine.raise_alert(
        AlertType.DELIVERY_FAILURE_RATE, severity,
        "High delivery failure rate", "test", affected or ["all"],
    )
    return alert


def _run(coro):
    return asyncio.run(coro)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Failure-rate alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureRate:

    def test_critical_rate_raises_one_alert(self):
        engine = _make_engine()

        async def scenario():
            await _record(engine.ledger, delivered=5, failed=7)  # 58% of 12
            first = await engine.evaluate_failure_rate()
            second = await engine.evaluate_failure_rate()
            return first, second, await engine.list_alerts()

        first, second, alerts = _run(scenario())
        assert len(alerts) == 1
        assert first.alert_id == second.alert_id
        assert first.severity == AlertSeverity.CRITICAL
        assert first.metrics.sample_count == 12
        assert first.metrics.error_count == 7
        assert first.metrics.threshold == 50.0

    def test_second_breach_updates_metrics(self):
        engine = _make_engine()

        async def scenario():
            await engine.evaluate_failure_rate((6, 11))
            alert = await engine.evaluate_failure_rate((9, 14))
            return alert, await engine.list_alerts()

        alert, alerts = _run(scenario())
        assert len(alerts) == 1
        assert alert.metrics.error_count == 9
        assert alert.metrics.sample_count == 14

    def test_warning_band(self):
        engine = _make_engine()
        alert = _run(engine.evaluate_failure_rate((3, 10)))
        assert alert.severity == AlertSeverity.WARNING

    def test_below_min_samples_does_nothing(self):
        engine = _make_engine()

        async def scenario():
            await engine.evaluate_failure_rate((9, 9))
            return await engine.list_alerts()

        assert _run(scenario()) == []

    def test_severity_only_rises(self):
        engine = _make_engine()

        async def scenario():
            await engine.evaluate_failure_rate((8, 10))
            return await engine.evaluate_failure_rate((3, 10))

        alert = _run(scenario())
        assert alert.severity == AlertSeverity.CRITICAL

    def test_recovery_auto_resolves(self):
        engine = _make_engine()

        async def scenario():
            alert = await engine.evaluate_failure_rate((8, 10))
            await engine.evaluate_failure_rate((1, 20))
            return await engine.get_alert(alert.alert_id)

        alert = _run(scenario())
        assert alert.status == AlertStatus.RESOLVED
        assert alert.auto_resolved
        assert alert.resolved_by == SYSTEM_ACTOR

    def test_new_breach_after_resolve_opens_new_alert(self):
        engine = _make_engine()

        async def scenario():
            first = await engine.evaluate_failure_rate((8, 10))
            await engine.resolve(first.alert_id, "ops", "fixed")
            second = await engine.evaluate_failure_rate((8, 10))
            return first, second

        first, second = _run(scenario())
        assert first.alert_id != second.alert_id


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Health-driven alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthAlerts:

    def test_single_degraded_provider_is_info(self):
        engine = _make_engine()

        async def scenario():
            await _fail(engine, "a", 3)
            return await engine.list_alerts()

        alerts = _run(scenario())
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.PROVIDER_DEGRADED
        assert alerts[0].severity == AlertSeverity.INFO
        assert alerts[0].affected_services == ["a:sms"]

    def test_provider_down_is_system_warning(self):
        engine = _make_engine()

        async def scenario():
            await _fail(engine, "a", 5)
            return await engine.list_alerts(AlertStatus.ACTIVE)

        alerts = _run(scenario())
        system = [a for a in alerts if a.alert_type == AlertType.SYSTEM_HEALTH]
        assert len(system) == 1
        assert system[0].severity == AlertSeverity.WARNING
        assert system[0].affected_services == ["all"]

    def test_whole_channel_down_is_critical(self):
        engine = _make_engine()

        async def scenario():
            await _fail(engine, "a", 5)
            await _fail(engine, "b", 5)
            return await engine.list_alerts()

        system = [a for a in _run(scenario()) if a.alert_type == AlertType.SYSTEM_HEALTH]
        assert len(system) == 1
        assert system[0].severity == AlertSeverity.CRITICAL

    def test_recovery_resolves_health_alerts(self):
        engine = _make_engine()

        async def scenario():
            await _fail(engine, "a", 5)
            await _succeed(engine, "a", 2)
            return await engine.list_alerts()

        alerts = _run(scenario())
        assert alerts
        assert all(a.status == AlertStatus.RESOLVED for a in alerts)
        assert all(a.auto_resolved for a in alerts)

    def test_tick_evaluates_everything(self):
        clock = _Clock()
        engine = _make_engine(clock)

        async def scenario():
            await _fail(engine, "a", 5)
            await _fail(engine, "b", 5)
            await engine.tick()
            return await engine.get_summary()

        summary = _run(scenario())
        assert summary["by_severity"]["critical"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_acknowledge(self):
        engine = _make_engine()

        async def scenario():
            alert = await _raise(engine)
            return await engine.acknowledge(alert.alert_id, "oncall", "looking")

        alert = _run(scenario())
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.acknowledged_by == "oncall"
        assert alert.acknowledge_notes == "looking"
        assert alert.acknowledged_at is not None

    def test_reacknowledge_keeps_first_actor(self):
        engine = _make_engine()

        async def scenario():
            alert = await _raise(engine)
            await engine.acknowledge(alert.alert_id, "first")
            return await engine.acknowledge(alert.alert_id, "second")

        assert _run(scenario()).acknowledged_by == "first"

    def test_resolve_from_active_and_acknowledged(self):
        engine = _make_engine()

        async def scenario():
            a = await _raise(engine, affected=["x"])
            b = await _raise(engine, affected=["y"])
            await engine.acknowledge(b.alert_id, "ops")
            ra = await engine.resolve(a.alert_id, "ops", "fixed", "notes")
            rb = await engine.resolve(b.alert_id, "ops", "fixed")
            return ra, rb

        ra, rb = _run(scenario())
        assert ra.status == rb.status == AlertStatus.RESOLVED
        assert ra.resolution == "fixed"
        assert ra.resolution_notes == "notes"
        assert not ra.auto_resolved

    @pytest.mark.parametrize("action", ["acknowledge", "resolve", "escalate"])
    def test_actions_on_resolved_alert_fail(self, action):
        engine = _make_engine()

        async def scenario():
            alert = await _raise(engine)
            await engine.resolve(alert.alert_id, "ops", "fixed")
            if action == "acknowledge":
                await engine.acknowledge(alert.alert_id, "ops")
            elif action == "resolve":
                await engine.resolve(alert.alert_id, "ops", "again")
            else:
                await engine.escalate(alert.alert_id, "why")

        with pytest.raises(InvalidTransitionError) as exc:
            _run(scenario())
        assert exc.value.error_code == "invalid_transition"

    def test_unknown_alert(self):
        engine = _make_engine()
        with pytest.raises(NotFoundError) as exc:
            _run(engine.get_alert("ALT-NOPE"))
        assert exc.value.error_code == "alert_not_found"

    def test_manual_escalation_capped(self):
        engine = _make_engine()

        async def scenario():
            alert = await _raise(engine)
            levels = []
            for _ in range(4):
                levels.append((await engine.escalate(alert.alert_id, "pager")).escalation_level)
            return levels, await engine.get_alert(alert.alert_id)

        levels, alert = _run(scenario())
        assert levels == [2, 3, 3, 3]
        assert len(alert.escalation_history) == 2
        assert alert.escalation_history[0]["from_level"] == 1
        assert alert.escalation_history[0]["automatic"] is False

    def test_dedupe_ignores_affected_order(self):
        engine = _make_engine()

        async def scenario():
            first, created1 = await engine.raise_alert(
                AlertType.PROVIDER_DEGRADED, AlertSeverity.INFO, "t", "d", ["b:sms", "a:sms"],
            )
            second, created2 = await engine.raise_alert(
                AlertType.PROVIDER_DEGRADED, AlertSeverity.INFO, "t", "d", ["a:sms", "b:sms"],
            )
            return first, second, created1, created2

        first, second, created1, created2 = _run(scenario())
        assert created1 and not created2
        assert first.alert_id == second.alert_id


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Automatic escalation
# ═══════════════════════════════════════════════════════════════════════════

class TestAutoEscalation:

    def test_escalates_after_ten_minutes(self):
        clock = _Clock()
        engine = _make_engine(clock)

        async def scenario():
            alert = await _raise(engine)
            clock.advance(minutes=9)
            early = await engine.escalate_due()
            clock.advance(minutes=1)
            due = await engine.escalate_due()
            return early, due, await engine.get_alert(alert.alert_id)

        early, due, alert = _run(scenario())
        assert early == []
        assert len(due) == 1
        assert alert.escalation_level == 2
        assert alert.escalation_history[-1]["automatic"] is True

    def test_escalation_levels_are_monotonic_and_capped(self):
        clock = _Clock()
        engine = _make_engine(clock)

        async def scenario():
            alert = await _raise(engine)
            levels = []
            for _ in range(5):
                clock.advance(minutes=10)
                await engine.escalate_due()
                levels.append((await engine.get_alert(alert.alert_id)).escalation_level)
            return levels

        levels = _run(scenario())
        assert levels == [2, 3, 3, 3, 3]
        assert levels == sorted(levels)

    def test_acknowledged_alert_does_not_auto_escalate(self):
        clock = _Clock()
        engine = _make_engine(clock)

        async def scenario():
            alert = await _raise(engine)
            await engine.acknowledge(alert.alert_id, "ops")
            clock.advance(minutes=30)
            await engine.escalate_due()
            return await engine.get_alert(alert.alert_id)

        assert _run(scenario()).escalation_level == 1

    def test_resolve_stops_escalation(self):
        clock = _Clock()
        engine = _make_engine(clock)

        async def scenario():
            alert = await _raise(engine)
            clock.advance(minutes=10)
            await engine.escalate_due()
            await engine.resolve(alert.alert_id, "ops", "done")
            clock.advance(minutes=30)
            await engine.tick()
            return await engine.get_alert(alert.alert_id)

        alert = _run(scenario())
        assert alert.status == AlertStatus.RESOLVED
        assert alert.escalation_level == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestQueries:

    def test_summary_and_active(self):
        engine = _make_engine()

        async def scenario():
            crit = await _raise(engine, AlertSeverity.CRITICAL, ["x"])
            warn = await _raise(engine, AlertSeverity.WARNING, ["y"])
            done = await _raise(engine, AlertSeverity.WARNING, ["z"])
            await engine.acknowledge(warn.alert_id, "ops")
            await engine.resolve(done.alert_id, "ops", "ok")
            await engine.escalate(crit.alert_id, "page")
            return await engine.get_summary(), await engine.get_active()

        summary, active = _run(scenario())
        assert summary["total"] == 3
        assert summary["open"] == 2
        assert summary["by_status"] == {"active": 1, "acknowledged": 1, "resolved": 1}
        assert summary["by_severity"]["critical"] == 1
        assert summary["max_escalation_level"] == 2
        assert [a.severity for a in active] == [AlertSeverity.CRITICAL, AlertSeverity.WARNING]

    def test_list_by_status(self):
        engine = _make_engine()

        async def scenario():
            a = await _raise(engine, affected=["x"])
            await _raise(engine, affected=["y"])
            await engine.resolve(a.alert_id, "ops", "ok")
            return (
                a,
                await engine.list_alerts(AlertStatus.RESOLVED),
                await engine.list_alerts(AlertStatus.ACTIVE),
            )

        a, resolved, active = _run(scenario())
        assert resolved[0].alert_id == a.alert_id
        assert len(resolved) == 1 and len(active) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Concurrent writers
# ═══════════════════════════════════════════════════════════════════════════

class _YieldingStore(InMemoryAlertStore):
    """Gives other tasks a turn between reading and returning, like a real database."""

    async def get(self, alert_id):
        alert = await super().get(alert_id)
        await asyncio.sleep(0)
        return alert

    async def list(self, status=None):
        alerts = await super().list(status)
        await asyncio.sleep(0)
        return alerts


class _GatedStore(InMemoryAlertStore):
    """Holds writes to one alert until released."""

    def __init__(self) -> None:
        super().__init__()
        self.held_id = None
        self.release = asyncio.Event()

    async def update(self, alert):
        if alert.alert_id == self.held_id:
            await self.release.wait()
        await super().update(alert)


class TestConcurrentWriters:

    def test_acknowledge_during_automatic_escalation_wins(self):
        clock = _Clock()
        engine = _make_engine(clock, store=_YieldingStore())

        async def scenario():
            alert = await _raise(engine)
            clock.advance(minutes=11)
            due, _ = await asyncio.gather(
                engine.escalate_due(),
                engine.acknowledge(alert.alert_id, "ops"),
            )
            return due, await engine.get_alert(alert.alert_id)

        due, alert = _run(scenario())
        assert due == []
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.escalation_level == 1
        assert alert.escalation_history == []

    def test_resolve_during_automatic_escalation_is_skipped(self):
        clock = _Clock()
        engine = _make_engine(clock, store=_YieldingStore())

        async def scenario():
            alert = await _raise(engine)
            clock.advance(minutes=11)
            due, _ = await asyncio.gather(
                engine.escalate_due(),
                engine.resolve(alert.alert_id, "ops", "fixed"),
            )
            return due, await engine.get_alert(alert.alert_id)

        due, alert = _run(scenario())
        assert due == []
        assert alert.status == AlertStatus.RESOLVED
        assert alert.escalation_level == 1

    def test_concurrent_actions_do_not_overwrite_each_other(self):
        engine = _make_engine(store=_YieldingStore())

        async def scenario():
            alert = await _raise(engine)
            await asyncio.gather(
                engine.escalate(alert.alert_id, "paging"),
                engine.acknowledge(alert.alert_id, "ops"),
            )
            return await engine.get_alert(alert.alert_id)

        alert = _run(scenario())
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.escalation_level == 2
        assert alert.version == 2

    def test_concurrent_breaches_open_one_alert(self):
        class SlowFind(InMemoryAlertStore):
            async def find_open(self, alert_type, affected):
                found = await super().find_open(alert_type, affected)
                await asyncio.sleep(0)
                return found

        engine = _make_engine(store=SlowFind())

        async def scenario():
            results = await asyncio.gather(*[
                engine.raise_alert(
                    AlertType.DELIVERY_FAILURE_RATE, severity, "High failure rate", "d", ["all"],
                )
                for severity in (AlertSeverity.WARNING, AlertSeverity.CRITICAL)
            ])
            return results, await engine.list_alerts()

        results, alerts = _run(scenario())
        assert sorted(created for _, created in results) == [False, True]
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.CRITICAL

    def test_slow_write_does_not_block_other_alerts(self):
        store = _GatedStore()
        engine = _make_engine(store=store)

        async def scenario():
            stuck = await _raise(engine, affected=["x"])
            other = await _raise(engine, affected=["y"])
            store.held_id = stuck.alert_id
            pending = asyncio.create_task(engine.acknowledge(stuck.alert_id, "ops"))
            await asyncio.sleep(0)
            done = await asyncio.wait_for(engine.acknowledge(other.alert_id, "ops"), timeout=1)
            store.release.set()
            await pending
            return done

        assert _run(scenario()).status == AlertStatus.ACKNOWLEDGED

    def test_store_rejects_stale_write_and_duplicate_open(self):
        store = InMemoryAlertStore()

        async def scenario():
            alert = await _raise(_make_engine(store=store))
            stale = await store.get(alert.alert_id)
            fresh = await store.get(alert.alert_id)
            fresh.title = "first"
            await store.update(fresh)
            stale.title = "second"
            with pytest.raises(AlertConflict):
                await store.update(stale)
            twin = replace(stale, alert_id="ALT-TWIN", version=0)
            with pytest.raises(AlertConflict):
                await store.add(twin)
            return await store.get(alert.alert_id)

        stored = _run(scenario())
        assert stored.title == "first"
        assert stored.version == 1
