"""
simulation.py — Simulated provider for development and tests.

Logs the rendered message instead of calling a carrier. Failure
injection lets tests and local runs drive the health state machine:

    SimulatedProvider("twilio", {SMS}, fail_with=ErrorKind.TRANSIENT)
    SimulatedProvider("smtp", {EMAIL}, latency_seconds=0.2)
    provider.script([True, False, True])     # per-call outcomes, in order
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Deque, FrozenSet, Iterable, List, Optional, Tuple, Union

from backend.app.delivery.codes import render_email, render_sms
from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.models import DeliveryChannel, ErrorKind, MessagePayload
from backend.app.delivery.providers.base import ProviderAdapter, SendResult

logger = logging.getLogger(__name__)

ScriptStep = Union[bool, ErrorKind]


class SimulatedProvider(ProviderAdapter):
    kind = "simulation"

    def __init__(
        self,
        provider_id: str,
        channels: FrozenSet[DeliveryChannel],
        *,
        latency_seconds: float = 0.0,
        fail_with: Optional[ErrorKind] = None,
        probe_ok: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(provider_id, channels, **kwargs)
        self.latency_seconds = latency_seconds
        self.fail_with = fail_with
        self.probe_ok = probe_ok
        self._script: Deque[ScriptStep] = deque()
        self.sent: List[Tuple[str, DeliveryChannel, str]] = []

    def script(self, steps: Iterable[ScriptStep]) -> None:
        """Queue per-call outcomes: True = success, ErrorKind = that failure."""
        self._script.extend(steps)

    def _next_outcome(self) -> ScriptStep:
        if self._script:
            return self._script.popleft()
        return self.fail_with if self.fail_with is not None else True

    async def _send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if channel == DeliveryChannel.SMS:
            body = render_sms(payload)
        else:
            subject, _, plain = render_email(payload)
            body = f"{subject}\n\n{plain}"

        outcome = self._next_outcome()
        if outcome is True:
            self.sent.append((destination, channel, body))
            logger.info(
                "[%s] %s → %s: %d chars",
                channel.value.upper(), self.provider_id,
                mask_contact(destination), len(body),
            )
            return SendResult.ok(
                f"sim-{uuid.uuid4().hex[:10]}",
                mode="simulated", message_length=len(body),
            )
        if outcome is False or outcome == ErrorKind.TRANSIENT:
            return SendResult.transient("simulated transient failure", status_code=503)
        return SendResult.permanent("simulated recipient rejected", status_code=400)

    async def probe(self, channel: DeliveryChannel) -> bool:
        return self.probe_ok and self.supports(channel)
