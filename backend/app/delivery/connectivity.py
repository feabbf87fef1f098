"""
connectivity.py — On-demand "can this contact be reached?" check.

Out-of-band by construction: one attempt on the best available provider,
no retry, and neither the health monitor nor the ledger is touched, so a
user's ad hoc test cannot move production health signals.

Failure reasons (separate from the orchestrator's taxonomy):

    invalid_contact   format check failed, nothing sent
    provider_error    no provider, or the provider rejected / errored
    timeout           provider did not answer within its timeout
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.delivery.codes import generate_code
from backend.app.delivery.contacts import is_valid_contact, mask_contact, normalize_contact
from backend.app.delivery.models import DeliveryChannel, MessagePayload
from backend.app.delivery.orchestrator import DeliveryOrchestrator

logger = logging.getLogger(__name__)


class ConnectivityFailure(str, Enum):
    INVALID_CONTACT = "invalid_contact"
    PROVIDER_ERROR  = "provider_error"
    TIMEOUT         = "timeout"


def _result(success: bool, message: str, **data: Any) -> Dict[str, Any]:
    return {"success": success, "message": message, "data": data}


class ConnectivityTester:
    """Single-shot reachability test using the orchestrator's candidate order."""

    def __init__(self, orchestrator: DeliveryOrchestrator, *, app_name: Optional[str] = None) -> None:
        self._orchestrator = orchestrator
        self._app_name = app_name

    async def test(self, channel: DeliveryChannel, contact: str) -> Dict[str, Any]:
        masked = mask_contact(contact)
        if not is_valid_contact(channel, contact):
            return _result(
                False, ConnectivityFailure.INVALID_CONTACT.value,
                channel=channel.value, contact=masked,
                detail=f"Not a valid {channel.value} contact",
            )

        candidates = self._orchestrator.select_candidates(channel)
        if not candidates:
            return _result(
                False, ConnectivityFailure.PROVIDER_ERROR.value,
                channel=channel.value, contact=masked,
                detail=f"No {channel.value} provider available",
            )

        adapter = candidates[0]
        payload = MessagePayload(code=generate_code(6), purpose="connectivity_test")
        if self._app_name:
            payload = replace(payload, app_name=self._app_name)

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                adapter.send(normalize_contact(channel, contact), channel, payload),
                timeout=adapter.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.info("[CONNECTIVITY] %s via %s timed out", masked, adapter.provider_id)
            return _result(
                False, ConnectivityFailure.TIMEOUT.value,
                channel=channel.value, contact=masked, provider=adapter.provider_id,
                detail=f"No answer within {adapter.timeout_seconds:g}s",
            )
        elapsed_ms = round((time.monotonic() - started) * 1000, 1)

        if not result.success:
            logger.info("[CONNECTIVITY] %s via %s failed: %s", masked, adapter.provider_id, result.error)
            return _result(
                False, ConnectivityFailure.PROVIDER_ERROR.value,
                channel=channel.value, contact=masked, provider=adapter.provider_id,
                detail=result.error,
                error_kind=result.error_kind.value if result.error_kind else None,
                response_time_ms=elapsed_ms,
            )

        logger.info("[CONNECTIVITY] %s reachable via %s (%.0fms)", masked, adapter.provider_id, elapsed_ms)
        return _result(
            True, f"Test message sent to {masked}",
            channel=channel.value, contact=masked, provider=adapter.provider_id,
            provider_ref=result.provider_ref, response_time_ms=elapsed_ms,
        )
