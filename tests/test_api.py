"""
test_api.py — HTTP surface over an in-memory delivery engine.

Covers:
    • OTP send / verify round trip and failure status codes
    • Send preferences, manual retry and the rate-limit status
    • Delivery history, diagnostics and metrics
    • Provider health and alert lifecycle endpoints
    • Connectivity tests and issue reports
    • Error envelope and service health probes

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from backend.app.core.config import settings
from backend.app.core.middleware import scrub_query
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.models import AlertSeverity, AlertType, DeliveryChannel, ErrorKind
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.providers.simulation import SimulatedProvider
from backend.app.main import create_app

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL
PHONE = "+14155550123"


def _make_engine(sms_fail_with=None) -> DeliveryEngine:
    return DeliveryEngine(ProviderRegistry([
        SimulatedProvider("sim-sms", frozenset({SMS}), priority=1, fail_with=sms_fail_with),
        SimulatedProvider("sim-mail", frozenset({EMAIL}), priority=1),
    ]))


@pytest.fixture
def engine():
    return _make_engine()


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as c:
        yield c


def _sent_code(engine: DeliveryEngine) -> str:
    body = engine.registry.get("sim-sms").sent[-1][2]
    return re.search(r"\b(\d{6})\b", body).group(1)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: OTP
# ═══════════════════════════════════════════════════════════════════════════

class TestOtpEndpoints:

    def test_send_and_verify(self, client, engine):
        resp = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms", "purpose": "login"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "Verification code sent"
        assert body["data"]["provider"] == "sim-sms"
        assert body["data"]["attempts"][0]["destination"] != PHONE
        assert body["data"]["code"]["purpose"] == "login"

        resp = client.post("/api/v1/otp/verify", json={
            "destination": PHONE, "purpose": "login", "code": _sent_code(engine),
        })
        assert resp.status_code == 200
        assert resp.json()["data"]["result"] == "verified"

    def test_wrong_code(self, client):
        client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        resp = client.post("/api/v1/otp/verify", json={"destination": PHONE, "code": "not-it"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "invalid_code"

    def test_invalid_destination(self, client):
        resp = client.post("/api/v1/otp/send", json={"destination": "12345", "channel": "sms"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == "invalid_destination"

    def test_unknown_channel_rejected(self, client):
        resp = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "fax"})
        assert resp.status_code == 422
        assert resp.json()["message"] == "invalid_input"

    def test_resend_cooldown(self, client):
        client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        resp = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        assert resp.status_code == 429
        assert resp.json()["message"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0

    def test_rate_limit_status(self, client):
        client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        resp = client.get("/api/v1/otp/rate-limit", params={"destination": PHONE})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["allowed"] is True
        assert data["destination"] != PHONE
        hour = next(w for w in data["windows"] if w["window"] == "hour")
        assert (hour["used"], hour["remaining"]) == (1, settings.OTP_MAX_SENDS_PER_HOUR - 1)
        assert hour["resets_at"] is not None

    def test_rate_limit_status_invalid_destination(self, client):
        resp = client.get("/api/v1/otp/rate-limit", params={"destination": "12345", "channel": "sms"})
        assert resp.status_code == 422
        assert resp.json()["message"] == "invalid_destination"

    def test_send_with_preferences(self):
        engine = DeliveryEngine(ProviderRegistry([
            SimulatedProvider("sim-sms", frozenset({SMS}), priority=1),
            SimulatedProvider("alt-sms", frozenset({SMS}), priority=2),
        ]))
        with TestClient(create_app(engine)) as client:
            resp = client.post("/api/v1/otp/send", json={
                "destination": PHONE,
                "preferences": {"preferred_channel": "sms", "preferred_provider": "alt-sms"},
            })
        assert resp.status_code == 200
        assert resp.json()["data"]["provider"] == "alt-sms"

    def test_retry_through_untried_provider(self):
        engine = DeliveryEngine(ProviderRegistry([
            SimulatedProvider("sim-sms", frozenset({SMS}), priority=1),
            SimulatedProvider("alt-sms", frozenset({SMS}), priority=2),
        ]))
        with TestClient(create_app(engine)) as client:
            sent = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"}).json()
            delivery_id = sent["data"]["attempts"][0]["delivery_id"]
            retried = client.post(f"/api/v1/otp/retry/{delivery_id}")
            second_retry = client.post(f"/api/v1/otp/retry/{retried.json()['data']['request_id']}")
            unknown = client.post("/api/v1/otp/retry/dlv_nope", json={"channel": "sms"})

        assert retried.status_code == 200
        assert retried.json()["data"]["provider"] == "alt-sms"
        assert second_retry.status_code == 200
        assert second_retry.json()["data"]["provider"] == "sim-sms"
        assert unknown.status_code == 404

    def test_retry_without_untried_provider_conflicts(self, client):
        sent = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"}).json()
        resp = client.post(f"/api/v1/otp/retry/{sent['data']['request_id']}")
        assert resp.status_code == 409
        assert resp.json()["message"] == "no_untried_provider"

    def test_provider_failure_is_bad_gateway(self):
        engine = _make_engine(sms_fail_with=ErrorKind.PERMANENT)
        with TestClient(create_app(engine)) as client:
            resp = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        assert resp.status_code == 502
        body = resp.json()
        assert body["success"] is False
        assert body["data"]["attempt_count"] >= 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: History, metrics and health
# ═══════════════════════════════════════════════════════════════════════════

class TestMonitoringEndpoints:

    def test_history_and_diagnostics(self, client):
        sent = client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"}).json()

        resp = client.get("/api/v1/delivery-history", params={"destination": "+1 415 555 0123"})
        page = resp.json()["data"]
        assert page["total"] == 1
        delivery_id = page["items"][0]["delivery_id"]

        diag = client.get(f"/api/v1/delivery-history/{delivery_id}/diagnostics").json()["data"]
        assert diag["request_id"] == sent["data"]["request_id"]
        assert diag["final_status"] == "delivered"
        assert diag["recommendations"][0]["type"] == "delivery_sent"
        assert diag["next_steps"]

    def test_unknown_diagnostics(self, client):
        resp = client.get("/api/v1/delivery-history/dlv_nope/diagnostics")
        assert resp.status_code == 404
        assert resp.json()["message"] == "delivery_not_found"

    def test_history_window_without_timezone(self, client):
        client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        resp = client.get("/api/v1/delivery-history", params={"since": "2000-01-01T00:00:00"})
        assert resp.status_code == 200
        assert resp.json()["data"]["total"] == 1

        resp = client.get("/api/v1/delivery-history", params={"until": "2000-01-01T00:00:00"})
        assert resp.status_code == 200
        assert resp.json()["data"]["total"] == 0

    def test_history_limit_validated(self, client):
        assert client.get("/api/v1/delivery-history", params={"limit": 0}).status_code == 422

    def test_metrics(self, client):
        client.post("/api/v1/otp/send", json={"destination": PHONE, "channel": "sms"})
        body = client.get("/api/v1/delivery-metrics", params={"hours": 1}).json()
        assert body["cached"] is False
        assert body["data"]["overall"]["delivered"] == 1

    def test_provider_health(self, client):
        data = client.get("/api/v1/delivery-metrics/health").json()["data"]
        assert data["status"] == "healthy"
        assert {p["provider_id"] for p in data["providers"]} == {"sim-sms", "sim-mail"}

        data = client.get("/api/v1/delivery-metrics/health", params={"channel": "email"}).json()["data"]
        assert [p["provider_id"] for p in data["providers"]] == ["sim-mail"]

    def test_service_health(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}
        report = client.get("/health/ready").json()
        assert report["status"] == "healthy"
        assert {c["name"] for c in report["components"]} == {"redis", "database", "providers"}

    def test_unreachable_cache_only_degrades(self, client, monkeypatch):
        monkeypatch.setattr(settings, "REDIS_ENABLED", True)
        with patch("backend.app.core.health.ping_redis", AsyncMock(return_value=False)):
            resp = client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"

    def test_not_ready_when_channel_down(self):
        engine = _make_engine()

        async def knock_down():
            for _ in range(5):
                await engine.health.record_outcome("sim-sms", SMS, False, ErrorKind.TRANSIENT)
            await engine.health.drain()

        asyncio.run(knock_down())
        with TestClient(create_app(engine)) as c:
            resp = c.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertEndpoints:

    @staticmethod
    def _seed_alert(engine: DeliveryEngine) -> str:
        alert, _ = asyncio.run(engine.alerts.raise_alert(
            AlertType.DELIVERY_FAILURE_RATE, AlertSeverity.WARNING,
            "High failure rate", "12% of deliveries failed", ["delivery"],
        ))
        return alert.alert_id

    def test_lifecycle(self, engine):
        alert_id = self._seed_alert(engine)
        with TestClient(create_app(engine)) as client:
            listed = client.get("/api/v1/alerts", params={"status": "active"}).json()
            assert listed["count"] == 1

            resp = client.post(f"/api/v1/alerts/{alert_id}/escalate", json={"reason": "no response"})
            assert resp.json()["data"]["escalation_level"] == 2

            resp = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", json={"actor": "ops"})
            assert resp.json()["message"] == "acknowledged"
            assert resp.json()["data"]["status"] == "acknowledged"

            resp = client.post(f"/api/v1/alerts/{alert_id}/resolve", json={
                "actor": "ops", "resolution": "provider recovered",
            })
            assert resp.json()["data"]["status"] == "resolved"

            resp = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", json={"actor": "ops"})
            assert resp.status_code == 409
            assert resp.json()["message"] == "invalid_transition"

            open_alerts = client.get("/api/v1/delivery-metrics/alerts").json()["data"]
            assert open_alerts["alerts"] == []

    def test_unknown_alert(self, client):
        resp = client.get("/api/v1/alerts/ALT-missing")
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    def test_summary(self, engine):
        self._seed_alert(engine)
        with TestClient(create_app(engine)) as client:
            summary = client.get("/api/v1/alerts/summary").json()["data"]
        assert summary["open"] == 1
        assert summary["by_status"]["active"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Diagnostics
# ═══════════════════════════════════════════════════════════════════════════

class TestDiagnosticEndpoints:

    def test_connectivity_ok(self, client):
        resp = client.post("/api/v1/connectivity-test", json={"channel": "email", "contact": "jane@example.com"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_connectivity_invalid_contact(self, client):
        resp = client.post("/api/v1/connectivity-test", json={"channel": "email", "contact": "nope"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "invalid_contact"

    def test_issue_report_round_trip(self, client):
        resp = client.post("/api/v1/issue-reports", json={
            "type": "delivery_failure",
            "description": "I never received my login code",
            "channel": "sms",
            "contact": PHONE,
        })
        assert resp.status_code == 200
        report = resp.json()["data"]
        assert report["report_id"].startswith("DIAG-")
        assert report["contact"] != PHONE

        fetched = client.get(f"/api/v1/issue-reports/{report['report_id']}").json()["data"]
        assert fetched["description"] == "I never received my login code"
        assert client.get("/api/v1/issue-reports").json()["count"] == 1

    def test_issue_report_description_too_short(self, client):
        resp = client.post("/api/v1/issue-reports", json={"type": "other", "description": "short"})
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestRequestMiddleware:

    def test_contacts_scrubbed_from_logged_query(self):
        assert scrub_query("destination=%2B14155550123&limit=5") == "destination=+1******0123&limit=5"
        assert scrub_query("contact=jane%40example.com") == "contact=ja**@example.com"
        assert scrub_query("") == ""

    def test_request_id_echoed(self, client):
        resp = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"
        assert resp.headers["X-Process-Time"].endswith("ms")
