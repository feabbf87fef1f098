"""
test_providers.py — Provider adapters, error classification and the registry.

Covers:
    • HTTP status → transient / permanent classification
    • Twilio and JSON gateway adapters over httpx.MockTransport
    • SMTP error mapping with a fake server
    • Registry construction from ProviderConfig and channel lookups

Run with:
    pytest tests/test_providers.py -v
"""

from __future__ import annotations

import asyncio
import json
import smtplib

import httpx
import pytest

from backend.app.core.config import ProviderConfig, Settings
from backend.app.delivery.models import DeliveryChannel, ErrorKind, MessagePayload
from backend.app.delivery.providers.base import classify_http_status, result_from_exception
from backend.app.delivery.providers.email_smtp import SmtpEmailProvider
from backend.app.delivery.providers.registry import ProviderRegistry, build_adapter
from backend.app.delivery.providers.simulation import SimulatedProvider
from backend.app.delivery.providers.sms_gateway import HttpGatewayProvider, TwilioSmsProvider

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL
PHONE = "+14155550123"
PAYLOAD = MessagePayload(code="482913", app_name="Acme", reference="req_1")


def _twilio(handler) -> TwilioSmsProvider:
    return TwilioSmsProvider(
        "twilio",
        account_sid="AC123",
        auth_token="secret",
        from_number="+15005550006",
        base_url="https://twilio.test/2010-04-01",
        transport=httpx.MockTransport(handler),
    )


def _gateway(handler, api_key="k-1") -> HttpGatewayProvider:
    return HttpGatewayProvider(
        "phone-email", frozenset({SMS, EMAIL}),
        base_url="https://gateway.test/api/",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


def _run(coro):
    return asyncio.run(coro)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassification:

    @pytest.mark.parametrize("status,expected", [
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (429, ErrorKind.TRANSIENT),
        (408, ErrorKind.TRANSIENT),
        (400, ErrorKind.PERMANENT),
        (401, ErrorKind.PERMANENT),
        (404, ErrorKind.PERMANENT),
    ])
    def test_http_status(self, status, expected):
        assert classify_http_status(status) == expected

    def test_exceptions_are_transient(self):
        assert result_from_exception(asyncio.TimeoutError()).error_kind == ErrorKind.TRANSIENT
        assert result_from_exception(ConnectionResetError("reset")).error.startswith("connection error")

    def test_unsupported_channel_is_permanent(self):
        provider = SimulatedProvider("sim", frozenset({SMS}))
        result = _run(provider.send("jane@example.com", EMAIL, PAYLOAD))
        assert result.error_kind == ErrorKind.PERMANENT

    def test_unexpected_exception_becomes_transient(self):
        class Exploding(SimulatedProvider):
            async def _send(self, destination, channel, payload):
                raise RuntimeError("boom")

        result = _run(Exploding("x", frozenset({SMS})).send(PHONE, SMS, PAYLOAD))
        assert result.success is False
        assert result.error_kind == ErrorKind.TRANSIENT
        assert "boom" in result.error


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Twilio
# ═══════════════════════════════════════════════════════════════════════════

class TestTwilio:

    def test_send_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = dict(
                pair.split("=", 1) for pair in request.content.decode().split("&")
            )
            seen["auth"] = request.headers.get("authorization", "")
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        result = _run(_twilio(handler).send(PHONE, SMS, PAYLOAD))

        assert result.success
        assert result.provider_ref == "SM42"
        assert seen["url"] == "https://twilio.test/2010-04-01/Accounts/AC123/Messages.json"
        assert seen["form"]["To"] == "%2B14155550123"
        assert "482913" in seen["form"]["Body"]
        assert seen["auth"].startswith("Basic ")

    def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(503, json={"message": "Service unavailable"})

        result = _run(_twilio(handler).send(PHONE, SMS, PAYLOAD))
        assert result.error_kind == ErrorKind.TRANSIENT
        assert result.status_code == 503

    def test_invalid_number_code_is_permanent(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        result = _run(_twilio(handler).send(PHONE, SMS, PAYLOAD))
        assert result.error_kind == ErrorKind.PERMANENT
        assert result.error == "Invalid 'To' Phone Number"

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _run(_twilio(handler).send(PHONE, SMS, PAYLOAD))
        assert result.error_kind == ErrorKind.TRANSIENT

    def test_probe(self):
        assert _run(_twilio(lambda r: httpx.Response(200, json={})).probe(SMS)) is True
        assert _run(_twilio(lambda r: httpx.Response(401)).probe(SMS)) is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: JSON gateway
# ═══════════════════════════════════════════════════════════════════════════

class TestGateway:

    def test_sms_body(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"success": True, "messageId": "m-1"})

        result = _run(_gateway(handler).send(PHONE, SMS, PAYLOAD))

        assert result.success and result.provider_ref == "m-1"
        assert seen["url"] == "https://gateway.test/api/send"
        assert seen["body"]["type"] == "sms"
        assert "482913" in seen["body"]["message"]
        assert seen["auth"] == "Bearer k-1"

    def test_email_body(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"id": "m-2"})

        result = _run(_gateway(handler, api_key=None).send("jane@example.com", EMAIL, PAYLOAD))

        assert result.provider_ref == "m-2"
        assert seen["body"]["type"] == "email"
        assert seen["body"]["subject"] == "Acme - Your verification code"
        assert "482913" in seen["body"]["html"]

    def test_refused_recipient_is_permanent(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "blocked recipient"})

        result = _run(_gateway(handler).send(PHONE, SMS, PAYLOAD))
        assert result.error_kind == ErrorKind.PERMANENT
        assert result.error == "blocked recipient"

    def test_rate_limited_is_transient(self):
        result = _run(_gateway(lambda r: httpx.Response(429, text="slow down")).send(PHONE, SMS, PAYLOAD))
        assert result.error_kind == ErrorKind.TRANSIENT
        assert result.error == "HTTP 429"

    def test_probe_hits_health(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200)

        assert _run(_gateway(handler).probe(SMS)) is True
        assert paths == ["/api/health"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: SMTP
# ═══════════════════════════════════════════════════════════════════════════

class _FakeSmtp:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def sendmail(self, sender, recipients, message):
        if self.error:
            raise self.error
        self.messages.append((sender, recipients, message))


class TestSmtp:

    @staticmethod
    def _provider(fake: _FakeSmtp) -> SmtpEmailProvider:
        provider = SmtpEmailProvider("smtp", host="mail.test", from_address="otp@acme.test")
        provider._connect = lambda: fake
        return provider

    def test_send_builds_multipart_message(self):
        fake = _FakeSmtp()
        result = _run(self._provider(fake).send("jane@example.com", EMAIL, PAYLOAD))

        assert result.success
        assert result.provider_ref.endswith("@acme.test>")
        sender, recipients, message = fake.messages[0]
        assert sender == "otp@acme.test"
        assert recipients == ["jane@example.com"]
        assert "multipart/alternative" in message

    @pytest.mark.parametrize("error,kind", [
        (smtplib.SMTPRecipientsRefused({"jane@example.com": (550, b"no such user")}), ErrorKind.PERMANENT),
        (smtplib.SMTPResponseException(451, b"try later"), ErrorKind.TRANSIENT),
        (smtplib.SMTPResponseException(554, b"rejected"), ErrorKind.PERMANENT),
        (smtplib.SMTPServerDisconnected("gone"), ErrorKind.TRANSIENT),
    ])
    def test_error_mapping(self, error, kind):
        result = _run(self._provider(_FakeSmtp(error)).send("jane@example.com", EMAIL, PAYLOAD))
        assert result.success is False
        assert result.error_kind == kind


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:

    def test_build_adapters_by_kind(self):
        cfg = Settings(TWILIO_ACCOUNT_SID="AC1", TWILIO_AUTH_TOKEN="t", TWILIO_FROM_NUMBER="+15005550006")
        twilio = build_adapter(ProviderConfig(provider_id="t", kind="twilio", priority=1), cfg)
        gateway = build_adapter(
            ProviderConfig(provider_id="g", kind="http_gateway", channels=["sms", "email"],
                           options={"base_url": "https://gw.test"}),
            cfg,
        )
        smtp = build_adapter(ProviderConfig(provider_id="s", kind="smtp", channels=["email"]), cfg)
        sim = build_adapter(ProviderConfig(provider_id="x", timeout_seconds=2.5), cfg)

        assert isinstance(twilio, TwilioSmsProvider) and twilio.account_sid == "AC1"
        assert isinstance(gateway, HttpGatewayProvider) and gateway.base_url == "https://gw.test"
        assert gateway.channels == frozenset({SMS, EMAIL})
        assert isinstance(smtp, SmtpEmailProvider) and smtp.channels == frozenset({EMAIL})
        assert isinstance(sim, SimulatedProvider) and sim.timeout_seconds == 2.5
        assert twilio.timeout_seconds == cfg.PROVIDER_TIMEOUT_SECONDS

    def test_for_channel_priority_order(self):
        registry = ProviderRegistry([
            SimulatedProvider("b", frozenset({SMS}), priority=2),
            SimulatedProvider("a", frozenset({SMS, EMAIL}), priority=2),
            SimulatedProvider("c", frozenset({SMS}), priority=1),
            SimulatedProvider("off", frozenset({SMS}), priority=0, enabled=False),
        ])
        assert [a.provider_id for a in registry.for_channel(SMS)] == ["c", "a", "b"]
        assert [a.provider_id for a in registry.for_channel(SMS, include_disabled=True)][0] == "off"
        assert registry.channel_enabled(EMAIL)

    def test_duplicate_id_rejected(self):
        with pytest.raises(ValueError):
            ProviderRegistry([
                SimulatedProvider("a", frozenset({SMS})),
                SimulatedProvider("a", frozenset({EMAIL})),
            ])

    def test_default_settings_registry(self):
        registry = ProviderRegistry.from_settings(Settings())
        assert {a.provider_id for a in registry.all()} == {"twilio", "phone-email", "smtp"}
        assert [a.provider_id for a in registry.for_channel(EMAIL)] == ["smtp", "phone-email"]
