"""
registry.py — Builds and indexes the configured provider adapters.

    settings.PROVIDERS  ──►  build_adapter()  ──►  ProviderRegistry
                                                      │
                             for_channel(sms) ◄───────┘  (priority order)

Credentials come from the flat settings (TWILIO_*, SMS_GATEWAY_*, SMTP_*)
unless the provider's `options` override them.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from backend.app.core.config import ProviderConfig, Settings, settings as default_settings
from backend.app.delivery.models import DeliveryChannel
from backend.app.delivery.providers.base import ProviderAdapter
from backend.app.delivery.providers.email_smtp import SmtpEmailProvider
from backend.app.delivery.providers.simulation import SimulatedProvider
from backend.app.delivery.providers.sms_gateway import HttpGatewayProvider, TwilioSmsProvider

logger = logging.getLogger(__name__)


def build_adapter(config: ProviderConfig, cfg: Optional[Settings] = None) -> ProviderAdapter:
    """Instantiate the adapter declared by one ProviderConfig."""
    cfg = cfg or default_settings
    opts = config.options
    common = {
        "priority": config.priority,
        "enabled": config.enabled,
        "timeout_seconds": config.timeout_seconds or cfg.PROVIDER_TIMEOUT_SECONDS,
    }
    channels = frozenset(DeliveryChannel(c) for c in config.channels)

    if config.kind == "twilio":
        return TwilioSmsProvider(
            config.provider_id,
            account_sid=opts.get("account_sid", cfg.TWILIO_ACCOUNT_SID or ""),
            auth_token=opts.get("auth_token", cfg.TWILIO_AUTH_TOKEN or ""),
            from_number=opts.get("from_number", cfg.TWILIO_FROM_NUMBER or ""),
            base_url=opts.get("base_url", cfg.TWILIO_BASE_URL),
            **common,
        )
    if config.kind == "http_gateway":
        return HttpGatewayProvider(
            config.provider_id,
            channels,
            base_url=opts.get("base_url", cfg.SMS_GATEWAY_URL),
            api_key=opts.get("api_key", cfg.SMS_GATEWAY_API_KEY),
            **common,
        )
    if config.kind == "smtp":
        return SmtpEmailProvider(
            config.provider_id,
            host=opts.get("host", cfg.SMTP_HOST or "localhost"),
            port=int(opts.get("port", cfg.SMTP_PORT)),
            username=opts.get("username", cfg.SMTP_USER),
            password=opts.get("password", cfg.SMTP_PASSWORD),
            use_tls=bool(opts.get("use_tls", cfg.SMTP_USE_TLS)),
            from_address=opts.get("from_address", cfg.EMAIL_FROM_ADDRESS),
            **common,
        )
    return SimulatedProvider(
        config.provider_id,
        channels,
        latency_seconds=float(opts.get("latency_seconds", 0.0)),
        **common,
    )


class ProviderRegistry:
    """Provider adapters indexed by id; lookups by channel in priority order."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "ProviderRegistry":
        cfg = cfg or default_settings
        registry = cls(build_adapter(p, cfg) for p in cfg.PROVIDERS)
        logger.info(
            "Provider registry: %s",
            ", ".join(f"{a.provider_id}({a.kind})" for a in registry.all()),
        )
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.provider_id in self._adapters:
            raise ValueError(f"Duplicate provider id: {adapter.provider_id}")
        self._adapters[adapter.provider_id] = adapter

    def get(self, provider_id: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider_id)

    def all(self) -> List[ProviderAdapter]:
        return list(self._adapters.values())

    def for_channel(self, channel: DeliveryChannel, *, include_disabled: bool = False) -> List[ProviderAdapter]:
        """Adapters serving `channel`, lowest priority number first."""
        adapters = [
            a for a in self._adapters.values()
            if a.supports(channel) and (include_disabled or a.enabled)
        ]
        return sorted(adapters, key=lambda a: (a.priority, a.provider_id))

    def channel_enabled(self, channel: DeliveryChannel) -> bool:
        return bool(self.for_channel(channel))

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
