"""
codes.py — Verification-code issuing, verification and message templates.

The code request flow is the orchestrator's main caller:

    issue()   → generate code → store HMAC hash → orchestrator.deliver()
    retry()   → fresh code    → orchestrator.deliver() minus providers tried
    verify()  → compare hash  → consume on success

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE OF AN ISSUED CODE
═══════════════════════════════════════════════════════════════════════════

    Key: (normalised destination, purpose) — one live code per key.

    • Only an HMAC-SHA256 of the code is stored (keyed with SECRET_KEY).
    • Expires after OTP_TTL_MINUTES (default 10).
    • OTP_MAX_VERIFY_ATTEMPTS wrong guesses (default 3) burn the code.
    • A new code for the same key is refused inside the resend cooldown
      (OTP_RESEND_COOLDOWN_SECONDS, default 60) with reason rate_limited.
    • OTP_MAX_SENDS_PER_HOUR (10) and OTP_MAX_SENDS_PER_DAY (50) cap the
      codes sent to one destination across all purposes.
    • A failed delivery keeps the stored code: the cooldown still applies.
    • Codes and send times live in a CodeStore (SQL when STORAGE_BACKEND=sql)
      so every worker sees the same cooldowns, caps and attempt counts.

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATES
═══════════════════════════════════════════════════════════════════════════

    SMS (≤160 chars, GSM 7-bit):
        "Your {app} verification code is 482913. It expires in 10 minutes.
         Do not share this code with anyone."

    Email:
        Subject: "{app} - Your verification code"
        Body:    HTML card with the code, plain-text alternative
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
import weakref
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from backend.app.core.config import settings
from backend.app.core.errors import RateLimitError, RetryUnavailableError, ValidationError
from backend.app.delivery.code_store import CodeStore, InMemoryCodeStore, IssuedCode
from backend.app.delivery.contacts import (
    infer_channel,
    is_valid_contact,
    mask_contact,
    normalize_contact,
)
from backend.app.delivery.ledger import RetryConfig, with_storage_retry
from backend.app.delivery.models import (
    DeliveryChannel,
    DeliveryOutcome,
    DeliveryPreferences,
    MessagePayload,
)

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


# ═══════════════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════════════

def render_sms(payload: MessagePayload) -> str:
    """Render the SMS body within the 160-char GSM limit."""
    body = (
        f"Your {payload.app_name} verification code is {payload.code}. "
        f"It expires in {payload.expires_in_minutes} minutes. "
        f"Do not share this code with anyone."
    )
    if len(body) > SMS_MAX_GSM7:
        body = (
            f"{payload.code} is your {payload.app_name} code. "
            f"Expires in {payload.expires_in_minutes} min."
        )
    return body[:SMS_MAX_GSM7]


def render_email(payload: MessagePayload) -> Tuple[str, str, str]:
    """Return (subject, html_body, plain_body)."""
    subject = f"{payload.app_name} - Your verification code"
    html_body = f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:#f8f9fa;padding:16px;border-radius:8px 8px 0 0;text-align:center;">
        <h2 style="margin:0;">Verify your {payload.purpose.replace('_', ' ')}</h2>
      </div>
      <div style="border:1px solid #e9ecef;border-top:none;padding:24px;border-radius:0 0 8px 8px;">
        <p>Use the following one-time code:</p>
        <div style="font-size:32px;font-weight:bold;letter-spacing:4px;text-align:center;
                    background:#f8f9fa;padding:16px;border-radius:8px;color:#007bff;">
          {payload.code}
        </div>
        <ul>
          <li>The code is valid for {payload.expires_in_minutes} minutes only.</li>
          <li>Do not share this code with anyone.</li>
          <li>If you did not request it, ignore this email.</li>
        </ul>
        <p style="font-size:12px;color:#6c757d;">Ref: {payload.reference}</p>
      </div>
    </div>
    """
    plain_body = (
        f"Your {payload.app_name} verification code is {payload.code}\n\n"
        f"The code is valid for {payload.expires_in_minutes} minutes only.\n"
        f"Do not share this code with anyone.\n"
        f"If you did not request it, ignore this email.\n\n"
        f"Ref: {payload.reference}\n"
    )
    return subject, html_body, plain_body


# ═══════════════════════════════════════════════════════════════════════════
# Issued codes
# ═══════════════════════════════════════════════════════════════════════════

class VerifyResult(str, Enum):
    VERIFIED          = "verified"
    INVALID_CODE      = "invalid_code"
    EXPIRED           = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    NOT_FOUND         = "not_found"


def generate_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class VerificationCodeService:
    """Issues codes through the orchestrator and verifies them."""

    def __init__(
        self,
        orchestrator,
        *,
        store: Optional[CodeStore] = None,
        retry: Optional[RetryConfig] = None,
        secret_key: Optional[str] = None,
        code_length: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        resend_cooldown_seconds: Optional[int] = None,
        max_sends_per_hour: Optional[int] = None,
        max_sends_per_day: Optional[int] = None,
        app_name: Optional[str] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self.store = store or InMemoryCodeStore()
        self.storage_retry = retry or RetryConfig(
            max_attempts=settings.STORAGE_RETRY_ATTEMPTS,
            backoff_base_seconds=settings.STORAGE_RETRY_BASE_SECONDS,
        )
        self._secret = (secret_key or settings.SECRET_KEY).encode()
        self.code_length = code_length or settings.OTP_LENGTH
        self.ttl_minutes = ttl_minutes or settings.OTP_TTL_MINUTES
        self.max_attempts = max_attempts or settings.OTP_MAX_VERIFY_ATTEMPTS
        self.resend_cooldown_seconds = (
            settings.OTP_RESEND_COOLDOWN_SECONDS
            if resend_cooldown_seconds is None else resend_cooldown_seconds
        )
        self.send_limits: List[Tuple[str, timedelta, int]] = [
            ("hour", timedelta(hours=1), max_sends_per_hour or settings.OTP_MAX_SENDS_PER_HOUR),
            ("day", timedelta(days=1), max_sends_per_day or settings.OTP_MAX_SENDS_PER_DAY),
        ]
        self.app_name = app_name or settings.APP_NAME
        # Serialises issue/verify per key inside this process; the store's
        # conditional writes cover other workers.
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _hash(self, code: str) -> str:
        return hmac.new(self._secret, code.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _key(channel: DeliveryChannel, destination: str, purpose: str) -> Tuple[str, str]:
        return (normalize_contact(channel, destination), purpose)

    def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _store_call(self, operation: str, func_):
        return await with_storage_retry(operation, func_, self.storage_retry)

    # ── Send caps ────────────────────────────────────────────────────────

    async def _send_windows(self, destination: str, now: datetime) -> List[Dict[str, Any]]:
        longest = max(window for _, window, _ in self.send_limits)
        sends = await self._store_call(
            "code_sends", lambda: self.store.sends_since(destination, now - longest),
        )
        windows = []
        for name, window, limit in self.send_limits:
            inside = [s for s in sends if s > now - window]
            windows.append({
                "window": name,
                "limit": limit,
                "used": len(inside),
                "remaining": max(0, limit - len(inside)),
                "resets_at": (inside[0] + window) if inside else None,
            })
        return windows

    async def rate_limit_status(self, destination: str, channel: DeliveryChannel) -> Dict[str, Any]:
        """How many more codes the destination may request, per window."""
        normalized = normalize_contact(channel, destination)
        windows = await self._send_windows(normalized, datetime.now(timezone.utc))
        for w in windows:
            w["resets_at"] = w["resets_at"].isoformat() if w["resets_at"] else None
        return {
            "destination": mask_contact(normalized),
            "channel": channel.value,
            "allowed": all(w["remaining"] > 0 for w in windows),
            "windows": windows,
        }

    # ── Issue / retry / verify ───────────────────────────────────────────

    async def _check_send_caps(self, destination: str, now: datetime) -> None:
        for w in await self._send_windows(destination, now):
            if w["remaining"] == 0:
                logger.warning(
                    "[OTP] Send cap reached for %s (%d per %s)",
                    mask_contact(destination), w["limit"], w["window"],
                )
                raise RateLimitError(
                    f"Too many codes requested for this destination in the last {w['window']}",
                    retry_after=int((w["resets_at"] - now).total_seconds()) + 1,
                )

    async def _new_code(
        self, key: Tuple[str, str], channel: DeliveryChannel, now: datetime,
    ) -> Tuple[IssuedCode, str]:
        """Store a fresh code for `key` and count the send. Caller holds the key lock."""
        code = generate_code(self.code_length)
        issued = IssuedCode(
            destination=key[0],
            purpose=key[1],
            channel=channel,
            code_hash=self._hash(code),
            expires_at=now + timedelta(minutes=self.ttl_minutes),
            attempts_left=self.max_attempts,
            issued_at=now,
        )
        await self._store_call("put_code", lambda: self.store.put(issued))
        await self._store_call("record_send", lambda: self.store.record_send(key[0], now))
        return issued, code

    async def _send(
        self, issued: IssuedCode, code: str, destination: str, channel: DeliveryChannel, **options,
    ) -> DeliveryOutcome:
        payload = MessagePayload(
            code=code,
            purpose=issued.purpose,
            expires_in_minutes=self.ttl_minutes,
            app_name=self.app_name,
        )
        outcome = await self._orchestrator.deliver(
            destination, channel, issued.purpose, payload=payload, **options,
        )
        issued.request_id = outcome.request_id
        await self._store_call(
            "set_request_id",
            lambda: self.store.set_request_id(*issued.key, issued.code_hash, outcome.request_id),
        )
        return outcome

    async def issue(
        self,
        destination: str,
        channel: Optional[DeliveryChannel] = None,
        purpose: str = "verification",
        *,
        fallback_destination: Optional[str] = None,
        preferences: Optional[DeliveryPreferences] = None,
    ) -> Tuple[DeliveryOutcome, Optional[IssuedCode]]:
        """
        Generate a code and deliver it.

        With no channel, the preferred channel is used, else the one the
        destination implies.

        Raises
        ------
        ValidationError
            Destination format is invalid for the channel.
        RateLimitError
            A code for this destination was issued inside the cooldown, or
            the destination has used up its hourly or daily sends.
        """
        if channel is None:
            channel = (preferences.preferred_channel if preferences else None) or infer_channel(destination)
        if not is_valid_contact(channel, destination):
            raise ValidationError(
                f"Invalid {channel.value} destination", field="destination",
                error_code="invalid_destination",
            )

        key = self._key(channel, destination, purpose)
        now = datetime.now(timezone.utc)

        async with self._lock_for(key):
            existing = await self._store_call("get_code", lambda: self.store.get(*key))
            if existing and not existing.is_expired(now):
                wait = (
                    existing.issued_at
                    + timedelta(seconds=self.resend_cooldown_seconds)
                    - now
                ).total_seconds()
                if wait > 0:
                    raise RateLimitError(
                        "Please wait before requesting another code",
                        retry_after=int(wait) + 1,
                    )
            await self._check_send_caps(key[0], now)
            issued, code = await self._new_code(key, channel, now)

        outcome = await self._send(
            issued, code, destination, channel,
            fallback_destination=fallback_destination, preferences=preferences,
        )

        # kept on failure: an abandoned attempt may still deliver it
        if not outcome.success:
            logger.warning(
                "[OTP] Delivery failed for %s (%s): %s",
                mask_contact(destination), purpose,
                outcome.reason.value if outcome.reason else "unknown",
            )
            return outcome, None

        logger.info(
            "[OTP] Code issued for %s (%s) via %s/%s",
            mask_contact(destination), purpose,
            outcome.channel.value if outcome.channel else "-", outcome.provider,
        )
        return outcome, issued

    async def retry(
        self,
        delivery_or_request_id: str,
        channel: Optional[DeliveryChannel] = None,
    ) -> Tuple[DeliveryOutcome, Optional[IssuedCode]]:
        """
        Send a fresh code for an earlier request through providers it has not tried.

        The new code replaces the pending one. The resend cooldown does not
        apply; the hourly and daily caps do. Channel defaults to the one the
        request asked for.

        Raises
        ------
        NotFoundError
            No delivery is known under that id.
        RetryUnavailableError
            no_contact, no_untried_provider, code_not_pending or code_expired.
        RateLimitError
            The destination has used up its sends.
        """
        _, chain = await self._orchestrator.ledger.resolve_chain(delivery_or_request_id)
        first = chain[0]
        channel = channel or first.channel
        key = (first.destination, first.purpose)

        destination = next((a.destination for a in chain if a.channel == channel), None)
        contacts = self._orchestrator.contacts
        if destination is None and contacts is not None:
            found = await contacts.alternate_contact(first.destination, channel)
            if found and is_valid_contact(channel, found):
                destination = normalize_contact(channel, found)
        if destination is None:
            raise RetryUnavailableError(
                "no_contact", f"No {channel.value} contact is known for this delivery",
            )

        tried = frozenset((a.provider, a.channel) for a in chain)
        if not self._orchestrator.select_candidates(channel, exclude=tried):
            raise RetryUnavailableError(
                "no_untried_provider",
                f"Every {channel.value} provider has already been tried for this delivery",
                providers_tried=sorted({provider for provider, _ in tried}),
            )

        now = datetime.now(timezone.utc)
        async with self._lock_for(key):
            pending = await self._store_call("get_code", lambda: self.store.get(*key))
            if pending is None or pending.request_id != first.request_id:
                raise RetryUnavailableError(
                    "code_not_pending", "The code for this delivery is no longer pending",
                )
            if pending.is_expired(now):
                raise RetryUnavailableError("code_expired", "The code has expired; request a new one")
            await self._check_send_caps(key[0], now)
            issued, code = await self._new_code(key, pending.channel, now)

        outcome = await self._send(issued, code, destination, channel, exclude=tried)
        logger.info(
            "[OTP] Retry of %s for %s as %s: %s",
            first.request_id, mask_contact(destination), outcome.request_id,
            "delivered" if outcome.success else (outcome.reason.value if outcome.reason else "failed"),
        )
        return outcome, issued if outcome.success else None

    async def verify(
        self,
        destination: str,
        purpose: str,
        code: str,
        channel: Optional[DeliveryChannel] = None,
    ) -> VerifyResult:
        if channel is None:
            channel = infer_channel(destination)
        key = self._key(channel, destination, purpose)

        async with self._lock_for(key):
            issued = await self._store_call("get_code", lambda: self.store.get(*key))
            if issued is None:
                return VerifyResult.NOT_FOUND

            async def drop() -> bool:
                return await self._store_call(
                    "delete_code", lambda: self.store.delete(*key, issued.code_hash),
                )

            if issued.is_expired():
                await drop()
                return VerifyResult.EXPIRED
            if issued.attempts_left <= 0:
                await drop()
                return VerifyResult.TOO_MANY_ATTEMPTS

            if hmac.compare_digest(issued.code_hash, self._hash(code or "")):
                # only the caller that removes the row gets VERIFIED
                if not await drop():
                    return VerifyResult.NOT_FOUND
                logger.info("[OTP] Code verified for %s (%s)", mask_contact(destination), purpose)
                return VerifyResult.VERIFIED

            left = await self._store_call(
                "spend_attempt", lambda: self.store.spend_attempt(*key, issued.code_hash),
            )
            if left < 0:
                return VerifyResult.NOT_FOUND
            if left == 0:
                await drop()
                logger.warning(
                    "[OTP] Attempts exhausted for %s (%s)", mask_contact(destination), purpose,
                )
                return VerifyResult.TOO_MANY_ATTEMPTS
            return VerifyResult.INVALID_CODE

    async def pending(self, destination: str, purpose: str, channel: DeliveryChannel) -> Optional[IssuedCode]:
        key = self._key(channel, destination, purpose)
        return await self._store_call("get_code", lambda: self.store.get(*key))
