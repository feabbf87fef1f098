"""
orchestrator.py — Provider selection, failover and channel fallback for one delivery.

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  0. Validate        │  bad format → invalid_destination
    │     destination     │  (no attempt, no ledger entry)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  1. Candidates      │  enabled providers for the channel: the user's
    │                     │  preferred provider and fallback order first, then
    │                     │  priority order; minus pairs a retry excludes and
    │                     │  those currently DOWN; if every one is down, only
    │                     │  the least-recently-failed (last resort)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Attempt         │  ledger: pending → call adapter (per-provider
    │                     │  timeout) → health.record_outcome → ledger:
    │                     │  delivered | failed
    └─────────┬───────────┘
              │
      delivered ──► done
      transient ──► next candidate           (budget shared by every channel)
      permanent ──► stop this channel ─┐
      exhausted ───────────────────────┤
                                       ▼
    ┌─────────────────────┐
    │  3. Channel         │  once per request: sms ↔ email, if the other
    │     fallback        │  channel has providers and an alternate contact
    │                     │  is known (argument or ContactDirectory)
    │                     │  and the preferences allow fallback
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
DEADLINE
═══════════════════════════════════════════════════════════════════════════

The whole run is a task awaited through asyncio.shield with the overall
deadline (default 30 s). When the deadline passes the caller gets
timeout_exceeded at once; the task is flagged abandoned, starts no new
attempt, and the in-flight one still completes and is recorded in the
ledger and the health monitor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import FrozenSet, List, Optional, Set, Tuple

from backend.app.core.config import settings
from backend.app.core.errors import StorageError
from backend.app.delivery.contacts import (
    ContactDirectory,
    alternate_channel,
    is_valid_contact,
    mask_contact,
    normalize_contact,
)
from backend.app.delivery.health_monitor import HealthMonitor
from backend.app.delivery.ledger import DeliveryLedger
from backend.app.delivery.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryErrorCode,
    DeliveryOutcome,
    DeliveryPreferences,
    DeliveryRequest,
    DeliveryStatus,
    ErrorKind,
    MessagePayload,
    ProviderStatus,
)
from backend.app.delivery.providers.base import ProviderAdapter, SendResult
from backend.app.delivery.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


# Why a channel stopped
_DELIVERED = "delivered"
_PERMANENT = "permanent"
_EXHAUSTED = "exhausted"
_NO_PROVIDER = "no_provider"
_BUDGET = "budget"
_ABANDONED = "abandoned"


def _preferred_order(adapters: List[ProviderAdapter], prefs: DeliveryPreferences) -> List[ProviderAdapter]:
    ranked = [prefs.preferred_provider] if prefs.preferred_provider else []
    ranked += [p for p in prefs.fallback_order if p not in ranked]
    rank = {provider_id: i for i, provider_id in enumerate(ranked)}
    # stable: unranked providers keep priority order
    return sorted(adapters, key=lambda a: rank.get(a.provider_id, len(rank)))


@dataclass
class _RunState:
    request: DeliveryRequest
    payload: MessagePayload
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    last_error_kind: Optional[ErrorKind] = None
    abandoned: bool = False
    started: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000


class DeliveryOrchestrator:
    """Runs one DeliveryRequest to a DeliveryOutcome."""

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthMonitor,
        ledger: DeliveryLedger,
        *,
        contacts: Optional[ContactDirectory] = None,
        max_attempts: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        channel_fallback_enabled: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self.health = health
        self.ledger = ledger
        self.contacts = contacts
        self.max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        self.deadline_seconds = deadline_seconds or settings.DELIVERY_DEADLINE_SECONDS
        self.channel_fallback_enabled = (
            settings.CHANNEL_FALLBACK_ENABLED
            if channel_fallback_enabled is None else channel_fallback_enabled
        )
        self._inflight: Set[asyncio.Task] = set()

        for adapter in registry.all():
            for channel in adapter.channels:
                health.register(adapter.provider_id, channel, adapter.priority)

    # ── Candidate selection ──────────────────────────────────────────────

    def select_candidates(
        self,
        channel: DeliveryChannel,
        preferences: Optional[DeliveryPreferences] = None,
        exclude: FrozenSet[Tuple[str, DeliveryChannel]] = frozenset(),
    ) -> List[ProviderAdapter]:
        """
        Enabled providers in preference then priority order, minus excluded
        and DOWN ones (or the last resort).
        """
        adapters = [
            a for a in self.registry.for_channel(channel)
            if (a.provider_id, channel) not in exclude
        ]
        if preferences is not None:
            adapters = _preferred_order(adapters, preferences)
            if not preferences.allow_fallback:
                adapters = adapters[:1]
        if not adapters:
            return []

        up = []
        for adapter in adapters:
            record = self.health.get(adapter.provider_id, channel)
            if record is None or record.status != ProviderStatus.DOWN:
                up.append(adapter)
        if up:
            return up

        def _failed_at(a: ProviderAdapter):
            record = self.health.get(a.provider_id, channel)
            return (record.last_failure_at.timestamp() if record and record.last_failure_at else 0.0, a.priority)

        last_resort = min(adapters, key=_failed_at)
        logger.warning(
            "[DELIVERY] All %s providers down; last resort %s",
            channel.value, last_resort.provider_id,
        )
        return [last_resort]

    # ── Public API ───────────────────────────────────────────────────────

    async def deliver(
        self,
        destination: str,
        channel: DeliveryChannel,
        purpose: str = "verification",
        *,
        payload: Optional[MessagePayload] = None,
        fallback_destination: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
        preferences: Optional[DeliveryPreferences] = None,
        exclude: FrozenSet[Tuple[str, DeliveryChannel]] = frozenset(),
    ) -> DeliveryOutcome:
        """
        Deliver one message, failing over between providers and channels.

        Never raises for provider or storage problems; the outcome carries
        a DeliveryErrorCode instead.
        """
        request = DeliveryRequest(
            destination=normalize_contact(channel, destination),
            channel=channel,
            purpose=purpose,
            fallback_destination=fallback_destination,
            preferences=preferences,
            exclude=frozenset(exclude),
        )

        if not is_valid_contact(channel, destination):
            logger.info(
                "[DELIVERY] %s rejected: invalid %s destination %s",
                request.request_id, channel.value, mask_contact(destination),
            )
            return DeliveryOutcome(
                request_id=request.request_id,
                success=False,
                status=DeliveryStatus.FAILED,
                requested_channel=channel,
                reason=DeliveryErrorCode.INVALID_DESTINATION,
                message=f"Invalid {channel.value} destination",
            )

        payload = payload or MessagePayload(code="", purpose=purpose)
        if not payload.reference:
            payload = replace(payload, reference=request.request_id)
        state = _RunState(request=request, payload=payload)

        task = asyncio.create_task(self._run(state))
        timeout = deadline_seconds or self.deadline_seconds
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            state.abandoned = True
            self._inflight.add(task)
            task.add_done_callback(self._on_abandoned_done)
            logger.warning(
                "[DELIVERY] %s exceeded %.1fs deadline after %d attempt(s)",
                request.request_id, timeout, len(state.attempts),
                extra={"request_id": request.request_id},
            )
            return self._outcome(
                state, DeliveryErrorCode.TIMEOUT_EXCEEDED,
                f"Delivery deadline of {timeout:g}s exceeded",
            )

    async def drain(self) -> None:
        """Wait for abandoned attempts to finish recording."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _on_abandoned_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Abandoned delivery task failed: %s", task.exception())

    # ── Internals ────────────────────────────────────────────────────────

    async def _run(self, state: _RunState) -> DeliveryOutcome:
        request = state.request
        try:
            stop = await self._try_channel(state, request.channel, request.destination)
            if stop == _DELIVERED:
                return self._success(state)

            prefs = request.preferences
            if (
                stop in (_PERMANENT, _EXHAUSTED, _NO_PROVIDER)
                and self.channel_fallback_enabled
                and (prefs is None or prefs.allow_fallback)
            ):
                alt = alternate_channel(request.channel)
                alt_destination = await self._alternate_destination(request, alt)
                if alt_destination and self.registry.channel_enabled(alt):
                    logger.info(
                        "[DELIVERY] %s falling back %s → %s (%s)",
                        request.request_id, request.channel.value, alt.value, stop,
                    )
                    stop = await self._try_channel(state, alt, alt_destination)
                    if stop == _DELIVERED:
                        return self._success(state)
        except StorageError as exc:
            logger.error(
                "[DELIVERY] %s storage failure: %s", request.request_id, exc.message,
                extra={"request_id": request.request_id},
            )
            return self._outcome(state, DeliveryErrorCode.STORAGE_ERROR, exc.message)

        return self._failure(state)

    async def _alternate_destination(self, request: DeliveryRequest, alt: DeliveryChannel) -> Optional[str]:
        if request.fallback_destination and is_valid_contact(alt, request.fallback_destination):
            return normalize_contact(alt, request.fallback_destination)
        if self.contacts is not None:
            found = await self.contacts.alternate_contact(request.destination, alt)
            if found and is_valid_contact(alt, found):
                return normalize_contact(alt, found)
        return None

    async def _try_channel(self, state: _RunState, channel: DeliveryChannel, destination: str) -> str:
        candidates = self.select_candidates(channel, state.request.preferences, state.request.exclude)
        if not candidates:
            state.failures.append(f"no enabled {channel.value} provider")
            return _NO_PROVIDER

        for adapter in candidates:
            if len(state.attempts) >= self.max_attempts:
                return _BUDGET
            if state.abandoned:
                return _ABANDONED

            attempt = DeliveryAttempt(
                request_id=state.request.request_id,
                provider=adapter.provider_id,
                channel=channel,
                destination=destination,
                attempt_number=len(state.attempts) + 1,
                purpose=state.request.purpose,
            )
            await self.ledger.record_attempt(attempt)
            slot = len(state.attempts)
            state.attempts.append(attempt)

            result = await self._call(adapter, destination, channel, state.payload)
            await self.health.record_outcome(adapter.provider_id, channel, result.success, result.error_kind)
            attempt = await self.ledger.complete_attempt(
                attempt,
                DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED,
                error=result.error,
                error_kind=result.error_kind,
                provider_ref=result.provider_ref,
            )
            state.attempts[slot] = attempt

            if result.success:
                return _DELIVERED

            state.last_error_kind = result.error_kind
            state.failures.append(
                f"{adapter.provider_id}/{channel.value} "
                f"({result.error_kind.value if result.error_kind else 'error'}: {result.error})"
            )
            logger.info(
                "[DELIVERY] %s attempt %d via %s/%s failed: %s",
                state.request.request_id, attempt.attempt_number,
                adapter.provider_id, channel.value, result.error,
                extra={
                    "request_id": state.request.request_id,
                    "delivery_id": attempt.delivery_id,
                    "provider": adapter.provider_id,
                    "channel": channel.value,
                    "attempt_number": attempt.attempt_number,
                },
            )
            if result.error_kind == ErrorKind.PERMANENT:
                return _PERMANENT

        return _EXHAUSTED

    async def _call(
        self,
        adapter: ProviderAdapter,
        destination: str,
        channel: DeliveryChannel,
        payload: MessagePayload,
    ) -> SendResult:
        try:
            return await asyncio.wait_for(
                adapter.send(destination, channel, payload),
                timeout=adapter.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return SendResult.transient(f"timeout after {adapter.timeout_seconds:g}s")

    # ── Outcomes ─────────────────────────────────────────────────────────

    def _outcome(
        self,
        state: _RunState,
        reason: Optional[DeliveryErrorCode],
        message: str,
    ) -> DeliveryOutcome:
        # copies: an abandoned run keeps going after this outcome is returned
        attempts = [replace(a) for a in state.attempts]
        last = attempts[-1] if attempts else None
        status = last.status if last else DeliveryStatus.FAILED
        if reason is not None and status == DeliveryStatus.PENDING:
            status = DeliveryStatus.FAILED
        return DeliveryOutcome(
            request_id=state.request.request_id,
            success=reason is None,
            status=status,
            requested_channel=state.request.channel,
            channel=last.channel if last else None,
            provider=last.provider if last else None,
            reason=reason,
            message=message,
            attempts=attempts,
            elapsed_ms=state.elapsed_ms,
        )

    def _success(self, state: _RunState) -> DeliveryOutcome:
        last = state.attempts[-1]
        outcome = self._outcome(state, None, f"Delivered via {last.provider} ({last.channel.value})")
        logger.info(
            "[DELIVERY] %s delivered to %s via %s/%s after %d attempt(s) in %.0fms",
            state.request.request_id, mask_contact(last.destination),
            last.provider, last.channel.value, len(state.attempts), outcome.elapsed_ms,
            extra={
                "request_id": state.request.request_id,
                "delivery_id": last.delivery_id,
                "provider": last.provider,
                "channel": last.channel.value,
                "duration_ms": outcome.elapsed_ms,
            },
        )
        return outcome

    def _failure(self, state: _RunState) -> DeliveryOutcome:
        if not state.attempts:
            reason = DeliveryErrorCode.NO_PROVIDER_AVAILABLE
        elif state.last_error_kind == ErrorKind.PERMANENT:
            reason = DeliveryErrorCode.PERMANENT_PROVIDER_ERROR
        else:
            reason = DeliveryErrorCode.TRANSIENT_PROVIDER_ERROR
        summary = "; ".join(state.failures) or "no providers attempted"
        outcome = self._outcome(state, reason, f"All delivery attempts failed: {summary}")
        logger.warning(
            "[DELIVERY] %s failed (%s) after %d attempt(s): %s",
            state.request.request_id, reason.value, len(state.attempts), summary,
            extra={"request_id": state.request.request_id},
        )
        return outcome
