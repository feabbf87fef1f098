"""
models.py — Shared data structures for verification-code delivery.

Defines:
    • DeliveryChannel   — sms / email
    • DeliveryStatus    — per-attempt state machine
    • ErrorKind         — adapter failure classification
    • DeliveryErrorCode — orchestrator outcome taxonomy
    • ProviderStatus    — provider health state machine
    • SystemHealthStatus
    • AlertSeverity / AlertStatus / AlertType
    • DeliveryRequest, MessagePayload, DeliveryAttempt, DeliveryOutcome
    • ProviderHealth, SystemHealthSnapshot
    • Alert, AlertMetrics

═══════════════════════════════════════════════════════════════════════════
STATE MACHINES
═══════════════════════════════════════════════════════════════════════════

    DeliveryAttempt:   pending ──► delivered
                          └──────► failed

    ProviderHealth:    healthy ──► degraded ──► down
                          ▲            │  ▲        │
                          └────────────┘  └────────┘   (recovery)

    Alert:             active ──► acknowledged ──► resolved
                          │  ▲                         ▲
                          └──┘ escalation 1→2→3        │
                          └────────────────────────────┘

Every status is a closed str-Enum so the values serialise directly into
JSON responses and SQL columns.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryChannel(str, Enum):
    """Delivery medium."""
    SMS   = "sms"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    """Delivery state per attempt."""
    PENDING   = "pending"     # written before the provider is called
    DELIVERED = "delivered"   # provider accepted the message
    FAILED    = "failed"      # provider rejected, errored or timed out


class ErrorKind(str, Enum):
    """How an adapter classifies a provider failure."""
    TRANSIENT = "transient"   # timeout, 5xx, rate limit: retryable
    PERMANENT = "permanent"   # invalid destination or rejected: not retried


class DeliveryErrorCode(str, Enum):
    """Machine-readable failure reasons returned to callers."""
    INVALID_INPUT            = "invalid_input"
    INVALID_DESTINATION      = "invalid_destination"
    TRANSIENT_PROVIDER_ERROR = "transient_provider_error"
    PERMANENT_PROVIDER_ERROR = "permanent_provider_error"
    NO_PROVIDER_AVAILABLE    = "no_provider_available"
    STORAGE_ERROR            = "storage_error"
    TIMEOUT_EXCEEDED         = "timeout_exceeded"


class ProviderStatus(str, Enum):
    """Rolling health of one (provider, channel) pair."""
    HEALTHY  = "healthy"
    DEGRADED = "degraded"
    DOWN     = "down"


class SystemHealthStatus(str, Enum):
    """Aggregate over every ProviderHealth record."""
    HEALTHY  = "healthy"
    DEGRADED = "degraded"
    WARNING  = "warning"
    CRITICAL = "critical"


class AlertSeverity(str, Enum):
    INFO     = "info"
    WARNING  = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 1,
    AlertSeverity.WARNING: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    ACTIVE       = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"


class AlertType(str, Enum):
    SYSTEM_HEALTH         = "system_health"
    DELIVERY_FAILURE_RATE = "delivery_failure_rate"
    PROVIDER_DEGRADED     = "provider_degraded"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _prefixed_id(prefix: str, length: int = 12) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:length].upper()}"


def new_request_id() -> str:
    return _prefixed_id("REQ")


def new_delivery_id() -> str:
    return _prefixed_id("DLV")


def new_alert_id() -> str:
    return _prefixed_id("ALT")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryPreferences:
    """
    A user's routing choices for one send.

    preferred_channel   None means "auto": the caller's channel or the one
                        the destination implies
    preferred_provider  tried first on every channel it serves
    allow_fallback      False pins the send to the first choice: one
                        provider, no channel fallback
    fallback_order      provider ids tried next, in this order, before the
                        remaining providers in priority order
    """
    preferred_channel: Optional[DeliveryChannel] = None
    preferred_provider: Optional[str] = None
    allow_fallback: bool = True
    fallback_order: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preferred_channel": self.preferred_channel.value if self.preferred_channel else "auto",
            "preferred_provider": self.preferred_provider,
            "allow_fallback": self.allow_fallback,
            "fallback_order": list(self.fallback_order),
        }


@dataclass(frozen=True)
class DeliveryRequest:
    """One OTP-send call. Immutable once issued."""
    destination: str
    channel: DeliveryChannel
    purpose: str
    request_id: str = field(default_factory=new_request_id)
    requested_at: datetime = field(default_factory=_now)
    fallback_destination: Optional[str] = None
    preferences: Optional[DeliveryPreferences] = None
    # (provider, channel) pairs a retry must not use again
    exclude: FrozenSet[Tuple[str, DeliveryChannel]] = frozenset()


@dataclass(frozen=True)
class MessagePayload:
    """
    What the provider sends. Adapters render it per channel
    (SMS body within 160 GSM chars, email subject + HTML + plain text).
    """
    code: str
    purpose: str = "verification"
    expires_in_minutes: int = 10
    reference: str = ""
    app_name: str = "OTP Delivery"


@dataclass
class DeliveryAttempt:
    """Ledger record of a single provider call for one request."""
    request_id: str
    provider: str
    channel: DeliveryChannel
    destination: str
    attempt_number: int
    purpose: str = "verification"
    delivery_id: str = field(default_factory=new_delivery_id)
    status: DeliveryStatus = DeliveryStatus.PENDING
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    provider_ref: Optional[str] = None
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != DeliveryStatus.PENDING

    @property
    def duration_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "request_id": self.request_id,
            "provider": self.provider,
            "channel": self.channel.value,
            "destination": self.destination,
            "purpose": self.purpose,
            "status": self.status.value,
            "attempt_number": self.attempt_number,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "provider_ref": self.provider_ref,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": (
                round(self.duration_ms, 1) if self.duration_ms is not None else None
            ),
        }


@dataclass
class DeliveryOutcome:
    """What deliver() returns to the caller."""
    request_id: str
    success: bool
    status: DeliveryStatus
    requested_channel: DeliveryChannel
    channel: Optional[DeliveryChannel] = None
    provider: Optional[str] = None
    reason: Optional[DeliveryErrorCode] = None
    message: str = ""
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def used_channel_fallback(self) -> bool:
        return self.channel is not None and self.channel != self.requested_channel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "success": self.success,
            "status": self.status.value,
            "requested_channel": self.requested_channel.value,
            "channel": self.channel.value if self.channel else None,
            "provider": self.provider,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "used_channel_fallback": self.used_channel_fallback,
            "attempt_count": len(self.attempts),
            "attempts": [a.to_dict() for a in self.attempts],
            "elapsed_ms": round(self.elapsed_ms, 1),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Provider health
# ═══════════════════════════════════════════════════════════════════════════

HealthKey = Tuple[str, DeliveryChannel]


@dataclass(frozen=True)
class ProviderHealth:
    """
    Live health of one (provider, channel) pair.

    Frozen: the monitor publishes a new record on every update, so a
    reader always sees one consistent version.
    """
    provider_id: str
    channel: DeliveryChannel
    priority: int = 100
    status: ProviderStatus = ProviderStatus.HEALTHY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    consecutive_probe_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_check_at: Optional[datetime] = None
    failure_rate: float = 0.0      # over the rolling window, 0..1
    sample_count: int = 0          # traffic outcomes in the window

    @property
    def key(self) -> HealthKey:
        return (self.provider_id, self.channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "priority": self.priority,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_probe_failures": self.consecutive_probe_failures,
            "failure_rate": round(self.failure_rate * 100, 1),
            "sample_count": self.sample_count,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "last_check_at": _iso(self.last_check_at),
        }


@dataclass(frozen=True)
class HealthTransition:
    """Published by the monitor whenever a provider changes status."""
    provider_id: str
    channel: DeliveryChannel
    previous: ProviderStatus
    current: ProviderStatus
    record: ProviderHealth
    at: datetime = field(default_factory=_now)


@dataclass
class SystemHealthSnapshot:
    """Aggregate health, derived at query time."""
    status: SystemHealthStatus
    providers: List[ProviderHealth] = field(default_factory=list)
    generated_at: datetime = field(default_factory=_now)

    def count(self, status: ProviderStatus) -> int:
        return sum(1 for p in self.providers if p.status == status)

    def by_channel(self) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {}
        for p in self.providers:
            bucket = out.setdefault(
                p.channel.value, {s.value: 0 for s in ProviderStatus},
            )
            bucket[p.status.value] += 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "total_providers": len(self.providers),
            "healthy": self.count(ProviderStatus.HEALTHY),
            "degraded": self.count(ProviderStatus.DEGRADED),
            "down": self.count(ProviderStatus.DOWN),
            "channels": self.by_channel(),
            "providers": [p.to_dict() for p in self.providers],
            "generated_at": _iso(self.generated_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertMetrics:
    failure_rate: Optional[float] = None   # percent
    error_count: Optional[int] = None
    time_range: Optional[str] = None
    sample_count: Optional[int] = None
    threshold: Optional[float] = None      # percent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_rate": self.failure_rate,
            "error_count": self.error_count,
            "time_range": self.time_range,
            "sample_count": self.sample_count,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AlertMetrics":
        data = data or {}
        return cls(
            failure_rate=data.get("failure_rate"),
            error_count=data.get("error_count"),
            time_range=data.get("time_range"),
            sample_count=data.get("sample_count"),
            threshold=data.get("threshold"),
        )


@dataclass
class Alert:
    """Operator-facing alert. Never deleted; resolved alerts stay for audit."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    affected_services: List[str] = field(default_factory=list)
    metrics: AlertMetrics = field(default_factory=AlertMetrics)
    context: Dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=new_alert_id)
    status: AlertStatus = AlertStatus.ACTIVE
    escalation_level: int = 1
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_escalated_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledge_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolution_notes: Optional[str] = None
    auto_resolved: bool = False
    escalation_history: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 0  # bumped by the store on every write

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    @property
    def dedupe_key(self) -> Tuple[str, Tuple[str, ...]]:
        return alert_key(self.alert_type, self.affected_services)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "escalation_level": self.escalation_level,
            "affected_services": list(self.affected_services),
            "metrics": self.metrics.to_dict(),
            "context": self.context,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_escalated_at": _iso(self.last_escalated_at),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledge_notes": self.acknowledge_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
            "resolution_notes": self.resolution_notes,
            "auto_resolved": self.auto_resolved,
            "escalation_history": self.escalation_history,
        }


def alert_key(alert_type: AlertType, affected: List[str]) -> Tuple[str, Tuple[str, ...]]:
    """Identity used to keep a single open alert per condition."""
    return (alert_type.value, tuple(sorted(set(affected))))
