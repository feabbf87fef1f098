"""
base.py — Uniform adapter contract for third-party SMS / email providers.

Every adapter turns a provider-specific call into a SendResult. Expected
provider failures are RETURNED, classified as transient or permanent;
adapters never raise for them.

═══════════════════════════════════════════════════════════════════════════
ERROR CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    Signal                                   Kind
    ──────────────────────────────────────   ──────────
    Timeout / connection refused / DNS       transient
    HTTP 408, 425, 429, 5xx                  transient
    HTTP 400, 401, 403, 404, 409, 422        permanent
    SMTP 4xx reply                           transient
    SMTP 5xx reply, recipient refused        permanent
    SMTP authentication failure              permanent

Transient failures are failed over by the orchestrator; permanent ones
stop the channel and may trigger the alternate-channel fallback.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

import httpx

from backend.app.delivery.models import DeliveryChannel, ErrorKind, MessagePayload

_TRANSIENT_HTTP = frozenset({408, 425, 429})


@dataclass
class SendResult:
    """Normalised outcome of one provider call."""
    success: bool
    provider_ref: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, provider_ref: Optional[str] = None, **details: Any) -> "SendResult":
        return cls(success=True, provider_ref=provider_ref, details=details)

    @classmethod
    def transient(cls, error: str, status_code: Optional[int] = None) -> "SendResult":
        return cls(
            success=False, error_kind=ErrorKind.TRANSIENT,
            error=error, status_code=status_code,
        )

    @classmethod
    def permanent(cls, error: str, status_code: Optional[int] = None) -> "SendResult":
        return cls(
            success=False, error_kind=ErrorKind.PERMANENT,
            error=error, status_code=status_code,
        )


def classify_http_status(status_code: int) -> ErrorKind:
    if status_code in _TRANSIENT_HTTP or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def result_from_http_error(response: httpx.Response, message: str = "") -> SendResult:
    """Build a classified failure from a non-2xx response."""
    error = message or f"HTTP {response.status_code}"
    kind = classify_http_status(response.status_code)
    return SendResult(
        success=False, error_kind=kind, error=error,
        status_code=response.status_code,
    )


def result_from_exception(exc: BaseException) -> SendResult:
    """Map a transport exception to a classified failure."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return SendResult.transient(f"timeout: {exc.__class__.__name__}")
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return SendResult.transient(f"connection error: {exc}")
    return SendResult.transient(f"{exc.__class__.__name__}: {exc}")


class ProviderAdapter(ABC):
    """
    One external provider, possibly serving several channels.

    Subclasses implement `_send`; `send` wraps it so that any unexpected
    exception becomes a transient SendResult.
    """

    kind: str = "abstract"

    def __init__(
        self,
        provider_id: str,
        channels: FrozenSet[DeliveryChannel],
        *,
        priority: int = 100,
        enabled: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.provider_id = provider_id
        self.channels = frozenset(channels)
        self.priority = priority
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds

    def supports(self, channel: DeliveryChannel) -> bool:
        return channel in self.channels

    async def send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        if not self.supports(channel):
            return SendResult.permanent(
                f"{self.provider_id} does not serve channel {channel.value}"
            )
        try:
            return await self._send(destination, channel, payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return result_from_exception(exc)

    @abstractmethod
    async def _send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        ...

    async def probe(self, channel: DeliveryChannel) -> bool:
        """Synthetic reachability check; no message is sent."""
        return True

    async def close(self) -> None:
        return None

    def describe(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "kind": self.kind,
            "channels": sorted(c.value for c in self.channels),
            "priority": self.priority,
            "enabled": self.enabled,
            "timeout_seconds": self.timeout_seconds,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.provider_id} p={self.priority}>"
