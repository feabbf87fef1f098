"""
ledger.py — Durable, queryable record of every delivery attempt.

═══════════════════════════════════════════════════════════════════════════
WRITE PATH
═══════════════════════════════════════════════════════════════════════════

    orchestrator ──► record_attempt(pending)      append
                 ──► call provider
                 ──► complete_attempt(delivered|failed)   single terminal update

Each write goes through a bounded retry with exponential backoff:

    Attempt 1 → fail → wait base
    Attempt 2 → fail → wait base × 2
    Attempt 3 → fail → StorageError (storage_error)

═══════════════════════════════════════════════════════════════════════════
READ PATH
═══════════════════════════════════════════════════════════════════════════

    get_history(filter, limit, offset)   most-recent-first page
    resolve_chain(id)                    delivery id or request id → attempt chain
    get_diagnostics(id)                  attempt chain + computed fields + troubleshooting
    failure_stats(since)                 (failed, total) for the alert tick
    get_metrics(hours)                   dashboard aggregates

Backends:
    InMemoryLedger  — development / tests (production: database)
    SqlLedger       — SQLAlchemy async (PostgreSQL, SQLite in tests)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import settings
from backend.app.core.errors import InvalidTransitionError, NotFoundError, StorageError
from backend.app.delivery import troubleshooting
from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.models import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
    ErrorKind,
    as_utc,
)
from backend.app.delivery.orm import DeliveryAttemptRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Storage write retry parameters."""
    max_attempts: int = 3
    backoff_base_seconds: float = 0.05
    backoff_type: str = "exponential"  # "exponential" or "linear"


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """Delay in seconds before retry `attempt` (1-based)."""
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


async def with_storage_retry(
    operation: str,
    func_: Callable[[], Awaitable[T]],
    config: RetryConfig,
) -> T:
    """
    Run a store call, retrying database and connection failures.

    Anything else (bad input, NotFoundError, InvalidTransitionError) is a
    caller problem and propagates on the first attempt. StorageError is
    raised once the retries are used up.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func_()
        except (SQLAlchemyError, OSError) as exc:
            last_error = exc
            if attempt < config.max_attempts:
                delay = _compute_backoff(config, attempt)
                logger.warning(
                    "Storage %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    operation, attempt, config.max_attempts, delay, exc,
                )
                await asyncio.sleep(delay)
    logger.error("Storage %s failed after %d attempts: %s", operation, config.max_attempts, last_error)
    raise StorageError(operation, str(last_error), attempts=config.max_attempts)


# ═══════════════════════════════════════════════════════════════════════════
# Query filter
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class HistoryFilter:
    destination: Optional[str] = None
    status: Optional[DeliveryStatus] = None
    provider: Optional[str] = None
    channel: Optional[DeliveryChannel] = None
    request_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def __post_init__(self) -> None:
        # bounds without a zone are taken as UTC, like every stored timestamp
        self.since = as_utc(self.since)
        self.until = as_utc(self.until)

    def matches(self, a: DeliveryAttempt) -> bool:
        return (
            (self.destination is None or a.destination == self.destination)
            and (self.status is None or a.status == self.status)
            and (self.provider is None or a.provider == self.provider)
            and (self.channel is None or a.channel == self.channel)
            and (self.request_id is None or a.request_id == self.request_id)
            and (self.since is None or a.started_at >= self.since)
            and (self.until is None or a.started_at <= self.until)
        )


# ═══════════════════════════════════════════════════════════════════════════
# Store backends
# ═══════════════════════════════════════════════════════════════════════════

class LedgerStore(ABC):
    """Raw persistence for DeliveryAttempt records."""

    @abstractmethod
    async def add(self, attempt: DeliveryAttempt) -> None: ...

    @abstractmethod
    async def update(self, attempt: DeliveryAttempt) -> None: ...

    @abstractmethod
    async def get(self, delivery_id: str) -> Optional[DeliveryAttempt]: ...

    @abstractmethod
    async def query(
        self, flt: HistoryFilter, limit: int, offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]:
        """Most-recent-first page and the total match count."""

    @abstractmethod
    async def chain(self, request_id: str) -> List[DeliveryAttempt]:
        """All attempts of one request ordered by attempt_number."""

    @abstractmethod
    async def since(self, since: datetime) -> List[DeliveryAttempt]: ...

    @abstractmethod
    async def count_since(self, since: datetime) -> Dict[DeliveryStatus, int]:
        """Attempt counts per status for attempts started at or after `since`."""


class InMemoryLedger(LedgerStore):
    """Append-only list plus an id index; records are copied in and out."""

    def __init__(self) -> None:
        self._attempts: List[DeliveryAttempt] = []
        self._by_id: Dict[str, int] = {}

    async def add(self, attempt: DeliveryAttempt) -> None:
        if attempt.delivery_id in self._by_id:
            raise ValueError(f"Duplicate delivery id {attempt.delivery_id}")
        self._by_id[attempt.delivery_id] = len(self._attempts)
        self._attempts.append(replace(attempt))

    async def update(self, attempt: DeliveryAttempt) -> None:
        idx = self._by_id.get(attempt.delivery_id)
        if idx is None:
            raise NotFoundError("Delivery", delivery_id=attempt.delivery_id)
        stored = self._attempts[idx]
        if stored.is_terminal:
            raise InvalidTransitionError("delivery", stored.delivery_id, stored.status.value, "complete")
        self._attempts[idx] = replace(attempt)

    async def get(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        idx = self._by_id.get(delivery_id)
        return replace(self._attempts[idx]) if idx is not None else None

    async def query(
        self, flt: HistoryFilter, limit: int, offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]:
        matched = [a for a in reversed(self._attempts) if flt.matches(a)]
        matched.sort(key=lambda a: a.started_at, reverse=True)
        return [replace(a) for a in matched[offset:offset + limit]], len(matched)

    async def chain(self, request_id: str) -> List[DeliveryAttempt]:
        rows = [replace(a) for a in self._attempts if a.request_id == request_id]
        return sorted(rows, key=lambda a: a.attempt_number)

    async def since(self, since: datetime) -> List[DeliveryAttempt]:
        return [replace(a) for a in self._attempts if a.started_at >= since]

    async def count_since(self, since: datetime) -> Dict[DeliveryStatus, int]:
        counts: Dict[DeliveryStatus, int] = {}
        for a in self._attempts:
            if a.started_at >= since:
                counts[a.status] = counts.get(a.status, 0) + 1
        return counts


def _to_row(a: DeliveryAttempt) -> DeliveryAttemptRow:
    return DeliveryAttemptRow(
        delivery_id=a.delivery_id,
        request_id=a.request_id,
        provider=a.provider,
        channel=a.channel.value,
        destination=a.destination,
        purpose=a.purpose,
        status=a.status.value,
        attempt_number=a.attempt_number,
        error=a.error,
        error_kind=a.error_kind.value if a.error_kind else None,
        provider_ref=a.provider_ref,
        started_at=a.started_at,
        completed_at=a.completed_at,
    )


def _from_row(row: DeliveryAttemptRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        delivery_id=row.delivery_id,
        request_id=row.request_id,
        provider=row.provider,
        channel=DeliveryChannel(row.channel),
        destination=row.destination,
        purpose=row.purpose,
        status=DeliveryStatus(row.status),
        attempt_number=row.attempt_number,
        error=row.error,
        error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
        provider_ref=row.provider_ref,
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
    )


class SqlLedger(LedgerStore):
    """SQLAlchemy async backend."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, attempt: DeliveryAttempt) -> None:
        async with self._session_factory() as session:
            session.add(_to_row(attempt))
            await session.commit()

    async def update(self, attempt: DeliveryAttempt) -> None:
        t = DeliveryAttemptRow
        async with self._session_factory() as session:
            result = await session.execute(
                update(t)
                .where(t.delivery_id == attempt.delivery_id, t.status == DeliveryStatus.PENDING.value)
                .values(
                    status=attempt.status.value,
                    error=attempt.error,
                    error_kind=attempt.error_kind.value if attempt.error_kind else None,
                    provider_ref=attempt.provider_ref,
                    completed_at=attempt.completed_at,
                )
            )
            if result.rowcount == 0:
                row = await session.get(t, attempt.delivery_id)
                if row is None:
                    raise NotFoundError("Delivery", delivery_id=attempt.delivery_id)
                raise InvalidTransitionError("delivery", attempt.delivery_id, row.status, "complete")
            await session.commit()

    async def get(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        async with self._session_factory() as session:
            row = await session.get(DeliveryAttemptRow, delivery_id)
            return _from_row(row) if row else None

    @staticmethod
    def _apply(stmt, flt: HistoryFilter):
        t = DeliveryAttemptRow
        if flt.destination is not None:
            stmt = stmt.where(t.destination == flt.destination)
        if flt.status is not None:
            stmt = stmt.where(t.status == flt.status.value)
        if flt.provider is not None:
            stmt = stmt.where(t.provider == flt.provider)
        if flt.channel is not None:
            stmt = stmt.where(t.channel == flt.channel.value)
        if flt.request_id is not None:
            stmt = stmt.where(t.request_id == flt.request_id)
        if flt.since is not None:
            stmt = stmt.where(t.started_at >= flt.since)
        if flt.until is not None:
            stmt = stmt.where(t.started_at <= flt.until)
        return stmt

    async def query(
        self, flt: HistoryFilter, limit: int, offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]:
        t = DeliveryAttemptRow
        async with self._session_factory() as session:
            total = await session.scalar(self._apply(select(func.count()).select_from(t), flt))
            stmt = (
                self._apply(select(t), flt)
                .order_by(t.started_at.desc(), t.attempt_number.desc())
                .offset(offset)
                .limit(limit)
            )
            rows = (await session.scalars(stmt)).all()
        return [_from_row(r) for r in rows], int(total or 0)

    async def chain(self, request_id: str) -> List[DeliveryAttempt]:
        t = DeliveryAttemptRow
        async with self._session_factory() as session:
            rows = (await session.scalars(
                select(t).where(t.request_id == request_id).order_by(t.attempt_number)
            )).all()
        return [_from_row(r) for r in rows]

    async def since(self, since: datetime) -> List[DeliveryAttempt]:
        t = DeliveryAttemptRow
        async with self._session_factory() as session:
            rows = (await session.scalars(select(t).where(t.started_at >= since))).all()
        return [_from_row(r) for r in rows]

    async def count_since(self, since: datetime) -> Dict[DeliveryStatus, int]:
        t = DeliveryAttemptRow
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(t.status, func.count()).where(t.started_at >= since).group_by(t.status)
            )).all()
        return {DeliveryStatus(status): int(n) for status, n in rows}


# ═══════════════════════════════════════════════════════════════════════════
# Ledger service
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryLedger:
    """Retrying, validating front for a LedgerStore."""

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        *,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self.store = store or InMemoryLedger()
        self.retry = retry or RetryConfig(
            max_attempts=settings.STORAGE_RETRY_ATTEMPTS,
            backoff_base_seconds=settings.STORAGE_RETRY_BASE_SECONDS,
        )

    # ── Writes ───────────────────────────────────────────────────────────

    async def record_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        await with_storage_retry("record_attempt", lambda: self.store.add(attempt), self.retry)
        logger.debug(
            "Attempt %s recorded (%s #%d via %s/%s)",
            attempt.delivery_id, attempt.request_id, attempt.attempt_number,
            attempt.provider, attempt.channel.value,
            extra={"delivery_id": attempt.delivery_id, "provider": attempt.provider},
        )
        return attempt

    async def complete_attempt(
        self,
        attempt: DeliveryAttempt,
        status: DeliveryStatus,
        *,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        provider_ref: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> DeliveryAttempt:
        """
        The single pending → delivered|failed transition.

        Returns the completed record; `attempt` itself is left untouched, so
        snapshots already handed out keep the state they were taken in.
        """
        if attempt.is_terminal:
            raise InvalidTransitionError("delivery", attempt.delivery_id, attempt.status.value, "complete")
        if status == DeliveryStatus.PENDING:
            raise ValueError("complete_attempt needs a terminal status")
        done = replace(
            attempt,
            status=status,
            error=error,
            error_kind=error_kind,
            provider_ref=provider_ref,
            completed_at=completed_at or datetime.now(timezone.utc),
        )
        await with_storage_retry("complete_attempt", lambda: self.store.update(done), self.retry)
        return done

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_history(
        self,
        flt: Optional[HistoryFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        items, total = await with_storage_retry(
            "get_history", lambda: self.store.query(flt or HistoryFilter(), limit, offset), self.retry,
        )
        return {
            "items": [_masked(a) for a in items],
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(items) < total,
        }

    async def get_chain(self, request_id: str) -> List[DeliveryAttempt]:
        return await with_storage_retry("chain", lambda: self.store.chain(request_id), self.retry)

    async def resolve_chain(self, delivery_or_request_id: str) -> Tuple[Optional[DeliveryAttempt], List[DeliveryAttempt]]:
        """
        (the attempt, if a delivery id was given; the whole request chain).

        Raises
        ------
        NotFoundError
            Nothing is known under that id.
        """
        attempt = await with_storage_retry(
            "get_attempt", lambda: self.store.get(delivery_or_request_id), self.retry,
        )
        request_id = attempt.request_id if attempt else delivery_or_request_id
        chain = await self.get_chain(request_id)
        if not chain:
            raise NotFoundError("Delivery", id=delivery_or_request_id)
        return attempt, chain

    async def get_diagnostics(self, delivery_or_request_id: str) -> Dict[str, Any]:
        """Full attempt chain for a delivery id or a request id, with troubleshooting."""
        attempt, chain = await self.resolve_chain(delivery_or_request_id)
        request_id = chain[0].request_id
        failed = [a for a in chain if a.status == DeliveryStatus.FAILED]

        last = chain[-1]
        first = chain[0]
        end = max((a.completed_at for a in chain if a.completed_at), default=None)
        elapsed_ms = (end - first.started_at).total_seconds() * 1000 if end else None

        return {
            "request_id": request_id,
            "delivery_id": attempt.delivery_id if attempt else last.delivery_id,
            "destination": mask_contact(first.destination),
            "purpose": first.purpose,
            "final_status": last.status.value,
            "total_attempts": len(chain),
            "elapsed_ms": round(elapsed_ms, 1) if elapsed_ms is not None else None,
            "providers_tried": _unique(a.provider for a in chain),
            "channels_used": _unique(a.channel.value for a in chain),
            "delivered_via": (
                {"provider": last.provider, "channel": last.channel.value}
                if last.status == DeliveryStatus.DELIVERED else None
            ),
            "errors": [
                {"attempt_number": a.attempt_number, "provider": a.provider,
                 "error": a.error, "error_kind": a.error_kind.value if a.error_kind else None,
                 "troubleshooting": troubleshooting.for_error(a.error, a.error_kind)}
                for a in failed
            ],
            "attempts": [_masked(a) for a in chain],
            **troubleshooting.recommendations(
                last.status, last.channel, [a.error_kind for a in failed],
            ),
        }

    async def failure_stats(self, since: datetime) -> Tuple[int, int]:
        """(failed, total) over attempts that reached a terminal status since `since`."""
        counts = await with_storage_retry(
            "failure_stats", lambda: self.store.count_since(as_utc(since)), self.retry,
        )
        failed = counts.get(DeliveryStatus.FAILED, 0)
        return failed, failed + counts.get(DeliveryStatus.DELIVERED, 0)

    async def get_metrics(self, hours: float = 24) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        attempts = await with_storage_retry(
            "get_metrics", lambda: self.store.since(now - timedelta(hours=hours)), self.retry,
        )
        return build_metrics(attempts, hours, now)


# ═══════════════════════════════════════════════════════════════════════════
# Aggregation
# ═══════════════════════════════════════════════════════════════════════════

def _unique(values) -> List[str]:
    seen: List[str] = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def _masked(a: DeliveryAttempt) -> Dict[str, Any]:
    data = a.to_dict()
    data["destination"] = mask_contact(a.destination)
    return data


def _bucket(attempts: List[DeliveryAttempt]) -> Dict[str, Any]:
    terminal = [a for a in attempts if a.is_terminal]
    delivered = [a for a in terminal if a.status == DeliveryStatus.DELIVERED]
    failed = len(terminal) - len(delivered)
    durations = [a.duration_ms for a in delivered if a.duration_ms is not None]
    total = len(terminal)
    return {
        "total_attempts": len(attempts),
        "completed": total,
        "pending": len(attempts) - total,
        "delivered": len(delivered),
        "failed": failed,
        "success_rate": round(len(delivered) / total * 100, 1) if total else 0.0,
        "failure_rate": round(failed / total * 100, 1) if total else 0.0,
        "avg_delivery_ms": round(sum(durations) / len(durations), 1) if durations else None,
    }


def build_metrics(attempts: List[DeliveryAttempt], hours: float, now: datetime) -> Dict[str, Any]:
    """Totals, per-channel, per-provider and failure analysis for the window."""
    by_channel: Dict[str, List[DeliveryAttempt]] = {}
    by_provider: Dict[str, List[DeliveryAttempt]] = {}
    for a in attempts:
        by_channel.setdefault(a.channel.value, []).append(a)
        by_provider.setdefault(a.provider, []).append(a)

    requests: Dict[str, List[DeliveryAttempt]] = {}
    for a in attempts:
        requests.setdefault(a.request_id, []).append(a)
    finals = [max(chain, key=lambda a: a.attempt_number) for chain in requests.values()]
    requests_delivered = sum(1 for a in finals if a.status == DeliveryStatus.DELIVERED)

    failures: Dict[str, Dict[str, Any]] = {}
    for a in attempts:
        if a.status != DeliveryStatus.FAILED:
            continue
        entry = failures.setdefault(a.provider, {"total": 0, "transient": 0, "permanent": 0, "errors": {}})
        entry["total"] += 1
        if a.error_kind:
            entry[a.error_kind.value] += 1
        key = a.error or "unknown"
        entry["errors"][key] = entry["errors"].get(key, 0) + 1

    return {
        "time_range": f"{hours:g} hours",
        "overall": _bucket(attempts),
        "requests": {
            "total": len(requests),
            "delivered": requests_delivered,
            "failed": len(finals) - requests_delivered
                      - sum(1 for a in finals if a.status == DeliveryStatus.PENDING),
            "channel_fallbacks": sum(
                1 for chain in requests.values()
                if len({a.channel for a in chain}) > 1
            ),
        },
        "by_channel": {k: _bucket(v) for k, v in sorted(by_channel.items())},
        "by_provider": {k: _bucket(v) for k, v in sorted(by_provider.items())},
        "failure_analysis": failures,
        "generated_at": now.isoformat(),
    }
