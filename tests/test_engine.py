"""
test_engine.py — The composed delivery engine on SQL storage.

Run with:
    pytest tests/test_engine.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.core.config import Settings
from backend.app.core.database import build_engine, init_db, session_factory
from backend.app.delivery.alert_store import AlertConflict, SqlAlertStore
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.issue_reports import IssueReportType
from backend.app.delivery.models import Alert, AlertSeverity, AlertStatus, AlertType, DeliveryChannel, ErrorKind
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.providers.simulation import SimulatedProvider

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL


def _make_engine(tmp_path) -> DeliveryEngine:
    registry = ProviderRegistry([
        SimulatedProvider("primary", frozenset({SMS}), priority=1),
        SimulatedProvider("backup", frozenset({SMS}), priority=2),
        SimulatedProvider("mail", frozenset({EMAIL}), priority=1),
    ])
    return DeliveryEngine(
        registry,
        cfg=Settings(SCHEDULER_ENABLED=False, REDIS_ENABLED=False, STORAGE_RETRY_BASE_SECONDS=0),
        sql_engine=build_engine(f"sqlite+aiosqlite:///{tmp_path}/engine.db"),
    )


class TestSqlEngine:

    def test_delivery_alerts_and_reports_persist(self, tmp_path):
        engine = _make_engine(tmp_path)
        primary = engine.registry.get("primary")

        async def scenario():
            await engine.start()
            try:
                primary.script([ErrorKind.TRANSIENT])
                outcome, issued = await engine.codes.issue("+14155550123", SMS, "login")

                for _ in range(5):
                    await engine.health.record_outcome("primary", SMS, False, ErrorKind.TRANSIENT)
                await engine.health.drain()
                open_alerts = await engine.alerts.get_active()

                alert = open_alerts[0]
                await engine.alerts.acknowledge(alert.alert_id, "ops")
                stored_alert = await engine.alerts.get_alert(alert.alert_id)

                report = await engine.reports.submit(
                    IssueReportType.DELIVERY_FAILURE, "Second provider was needed",
                    delivery_id=outcome.attempts[0].delivery_id,
                )
                reports = await engine.reports.list()

                history = await engine.ledger.get_history()
                diag = await engine.ledger.get_diagnostics(outcome.request_id)
                return outcome, issued, open_alerts, stored_alert, report, reports, history, diag
            finally:
                await engine.stop()

        outcome, issued, open_alerts, stored_alert, report, reports, history, diag = asyncio.run(scenario())

        assert outcome.success and outcome.provider == "backup"
        assert issued is not None
        assert history["total"] == 2
        assert diag["providers_tried"] == ["primary", "backup"]

        assert open_alerts
        assert stored_alert.status == AlertStatus.ACKNOWLEDGED
        assert stored_alert.acknowledged_by == "ops"

        assert [r.report_id for r in reports] == [report.report_id]
        assert reports[0].priority.value == "high"


class TestSqlAlertStore:

    def test_versioned_writes_and_single_open_alert(self, tmp_path):
        async def scenario():
            sql = build_engine(f"sqlite+aiosqlite:///{tmp_path}/alerts.db")
            await init_db(sql)
            store = SqlAlertStore(session_factory(sql))
            try:
                alert = Alert(AlertType.SYSTEM_HEALTH, AlertSeverity.WARNING, "t", "d", ["all"])
                await store.add(alert)

                with pytest.raises(AlertConflict):
                    await store.add(Alert(AlertType.SYSTEM_HEALTH, AlertSeverity.CRITICAL, "t", "d", ["all"]))

                stale = await store.get(alert.alert_id)
                fresh = await store.get(alert.alert_id)
                fresh.status = AlertStatus.RESOLVED
                await store.update(fresh)
                stale.title = "late"
                with pytest.raises(AlertConflict):
                    await store.update(stale)

                reopened = Alert(AlertType.SYSTEM_HEALTH, AlertSeverity.WARNING, "t", "d", ["all"])
                await store.add(reopened)
                found = await store.find_open(AlertType.SYSTEM_HEALTH, ["all"])
                return await store.get(alert.alert_id), found, reopened
            finally:
                await sql.dispose()

        first, found, reopened = asyncio.run(scenario())
        assert first.status == AlertStatus.RESOLVED
        assert first.title == "t"
        assert first.version == 1
        assert found.alert_id == reopened.alert_id
