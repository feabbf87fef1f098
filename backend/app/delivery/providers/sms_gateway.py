"""
sms_gateway.py — HTTP provider adapters (Twilio, JSON gateway).

═══════════════════════════════════════════════════════════════════════════
HTTP PROVIDER ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Orchestrator → adapter.send() → HTTP POST → Provider API → Carrier

    Twilio:
        POST {base}/Accounts/{sid}/Messages.json
        Basic auth (sid, token), form-encoded To / From / Body
        201 → {"sid": "SM..."}

    JSON gateway ("phone-email" style, serves sms and email):
        POST {base}/send
        Authorization: Bearer <key>
        {"to": ..., "type": "sms"|"email", "message": ..., "subject"?: ...}
        2xx → {"messageId": ...}

    Probe:
        Twilio   GET {base}/Accounts/{sid}.json
        Gateway  GET {base}/health

Both adapters keep one lazily created httpx.AsyncClient. Tests pass an
httpx.MockTransport through `transport=`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional

import httpx

from backend.app.delivery.codes import render_email, render_sms
from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.models import DeliveryChannel, MessagePayload
from backend.app.delivery.providers.base import (
    ProviderAdapter,
    SendResult,
    result_from_exception,
    result_from_http_error,
)

logger = logging.getLogger(__name__)

USER_AGENT = "otp-delivery-engine/1.0"


class _HttpProvider(ProviderAdapter):
    """Shared httpx client lifecycle."""

    def __init__(
        self,
        provider_id: str,
        channels: FrozenSet[DeliveryChannel],
        *,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, channels, **kwargs)
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"User-Agent": USER_AGENT},
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Twilio
# ═══════════════════════════════════════════════════════════════════════════

class TwilioSmsProvider(_HttpProvider):
    kind = "twilio"

    # Twilio error codes that mean "this number will never work"
    _PERMANENT_CODES = {21211, 21408, 21610, 21614}

    def __init__(
        self,
        provider_id: str,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        **kwargs,
    ) -> None:
        kwargs.pop("channels", None)
        super().__init__(
            provider_id, frozenset({DeliveryChannel.SMS}), base_url=base_url, **kwargs,
        )
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    async def _send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        body = render_sms(payload)
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                data={"To": destination, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
            )
        except httpx.HTTPError as exc:
            logger.warning("[SMS/Twilio] %s → %s: %s", self.provider_id, mask_contact(destination), exc)
            return result_from_exception(exc)

        data = _json_or_empty(response)
        if response.is_success:
            logger.info("[SMS/Twilio] Sent to %s sid=%s", mask_contact(destination), data.get("sid"))
            return SendResult.ok(data.get("sid"), status=data.get("status"))

        message = data.get("message") or f"HTTP {response.status_code}"
        if data.get("code") in self._PERMANENT_CODES:
            return SendResult.permanent(message, status_code=response.status_code)
        return result_from_http_error(response, message)

    async def probe(self, channel: DeliveryChannel) -> bool:
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/Accounts/{self.account_sid}.json",
                auth=(self.account_sid, self.auth_token),
            )
        except httpx.HTTPError as exc:
            logger.debug("[SMS/Twilio] Probe failed: %s", exc)
            return False
        return response.is_success


# ═══════════════════════════════════════════════════════════════════════════
# Generic JSON gateway
# ═══════════════════════════════════════════════════════════════════════════

class HttpGatewayProvider(_HttpProvider):
    kind = "http_gateway"

    def __init__(
        self,
        provider_id: str,
        channels: FrozenSet[DeliveryChannel],
        *,
        base_url: str,
        api_key: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, channels, base_url=base_url, **kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> Dict[str, Any]:
        if channel == DeliveryChannel.SMS:
            return {"to": destination, "type": "sms", "message": render_sms(payload)}
        subject, html_body, plain_body = render_email(payload)
        return {
            "to": destination,
            "type": "email",
            "subject": subject,
            "html": html_body,
            "message": plain_body,
        }

    async def _send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/send",
                json=self._build_body(destination, channel, payload),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "[%s/Gateway] %s → %s: %s",
                channel.value.upper(), self.provider_id, mask_contact(destination), exc,
            )
            return result_from_exception(exc)

        data = _json_or_empty(response)
        if response.is_success and data.get("success", True):
            return SendResult.ok(
                data.get("messageId") or data.get("id"),
                estimated_delivery=data.get("estimatedDelivery"),
            )
        if response.is_success:
            # 2xx with success=false: the gateway refused this recipient
            return SendResult.permanent(
                data.get("error") or "rejected by gateway",
                status_code=response.status_code,
            )
        return result_from_http_error(response, data.get("error") or "")

    async def probe(self, channel: DeliveryChannel) -> bool:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/health", headers=self._headers())
        except httpx.HTTPError as exc:
            logger.debug("[Gateway] Probe failed for %s: %s", self.provider_id, exc)
            return False
        return response.is_success


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
