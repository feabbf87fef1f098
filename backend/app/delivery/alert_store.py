"""
alert_store.py — Persistence for operator alerts.

Alerts are never deleted. The store keeps every record and answers the
two questions the alert engine asks: "is there an open alert for this
condition?" and "which alerts are in this status?".

Writes are optimistic. Every alert carries a version; update() only
succeeds against the version the caller loaded and bumps it, and add()
refuses a second open alert for the same condition. Both raise
AlertConflict when another writer got there first, and the engine reloads
and retries. No lock is held while talking to the database.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import NotFoundError
from backend.app.delivery.models import (
    Alert,
    AlertMetrics,
    AlertSeverity,
    AlertStatus,
    AlertType,
    alert_key,
    as_utc,
)
from backend.app.delivery.orm import AlertRow


class AlertConflict(Exception):
    """A concurrent write changed the alert (or opened the same condition) first."""

    def __init__(self, alert_id: str, reason: str = "stale version"):
        super().__init__(f"{alert_id}: {reason}")
        self.alert_id = alert_id


def open_key(alert_type: AlertType, affected: List[str]) -> str:
    kind, services = alert_key(alert_type, affected)
    return f"{kind}|{','.join(services)}"


class AlertStore(ABC):

    @abstractmethod
    async def add(self, alert: Alert) -> None:
        """Insert; AlertConflict if the condition already has an open alert."""

    @abstractmethod
    async def update(self, alert: Alert) -> None:
        """Compare-and-set on `alert.version`; bumps it on success."""

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]: ...

    @abstractmethod
    async def list(self, status: Optional[AlertStatus] = None) -> List[Alert]:
        """Newest first."""

    async def find_open(self, alert_type: AlertType, affected: List[str]) -> Optional[Alert]:
        key = alert_key(alert_type, affected)
        for alert in await self.list():
            if alert.is_open and alert.dedupe_key == key:
                return alert
        return None


class InMemoryAlertStore(AlertStore):
    """Dict-backed store (production: database). Records are deep-copied in and out."""

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}

    async def add(self, alert: Alert) -> None:
        if alert.is_open and any(
            a.is_open and a.dedupe_key == alert.dedupe_key for a in self._alerts.values()
        ):
            raise AlertConflict(alert.alert_id, "condition already has an open alert")
        self._alerts[alert.alert_id] = copy.deepcopy(alert)

    async def update(self, alert: Alert) -> None:
        stored = self._alerts.get(alert.alert_id)
        if stored is None:
            raise NotFoundError("Alert", alert_id=alert.alert_id)
        if stored.version != alert.version:
            raise AlertConflict(alert.alert_id)
        alert.version += 1
        self._alerts[alert.alert_id] = copy.deepcopy(alert)

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def list(self, status: Optional[AlertStatus] = None) -> List[Alert]:
        alerts = [
            copy.deepcopy(a) for a in self._alerts.values()
            if status is None or a.status == status
        ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)


def _values(a: Alert) -> Dict[str, Any]:
    return {
        "alert_type": a.alert_type.value,
        "severity": a.severity.value,
        "title": a.title,
        "description": a.description,
        "status": a.status.value,
        "escalation_level": a.escalation_level,
        "affected_services": list(a.affected_services),
        "metrics": a.metrics.to_dict(),
        "context": dict(a.context),
        "created_at": a.created_at,
        "updated_at": a.updated_at,
        "last_escalated_at": a.last_escalated_at,
        "acknowledged_by": a.acknowledged_by,
        "acknowledged_at": a.acknowledged_at,
        "acknowledge_notes": a.acknowledge_notes,
        "resolved_by": a.resolved_by,
        "resolved_at": a.resolved_at,
        "resolution": a.resolution,
        "resolution_notes": a.resolution_notes,
        "auto_resolved": a.auto_resolved,
        "escalation_history": list(a.escalation_history),
        "open_key": open_key(a.alert_type, a.affected_services) if a.is_open else None,
    }


def _from_row(row: AlertRow) -> Alert:
    return Alert(
        alert_id=row.alert_id,
        alert_type=AlertType(row.alert_type),
        severity=AlertSeverity(row.severity),
        title=row.title,
        description=row.description,
        status=AlertStatus(row.status),
        escalation_level=row.escalation_level,
        affected_services=list(row.affected_services or []),
        metrics=AlertMetrics.from_dict(row.metrics),
        context=dict(row.context or {}),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        last_escalated_at=as_utc(row.last_escalated_at),
        acknowledged_by=row.acknowledged_by,
        acknowledged_at=as_utc(row.acknowledged_at),
        acknowledge_notes=row.acknowledge_notes,
        resolved_by=row.resolved_by,
        resolved_at=as_utc(row.resolved_at),
        resolution=row.resolution,
        resolution_notes=row.resolution_notes,
        auto_resolved=bool(row.auto_resolved),
        escalation_history=list(row.escalation_history or []),
        version=row.version or 0,
    )


class SqlAlertStore(AlertStore):
    """SQLAlchemy async backend."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, alert: Alert) -> None:
        async with self._session_factory() as session:
            session.add(AlertRow(alert_id=alert.alert_id, version=alert.version, **_values(alert)))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise AlertConflict(alert.alert_id, "condition already has an open alert")

    async def update(self, alert: Alert) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AlertRow)
                .where(AlertRow.alert_id == alert.alert_id, AlertRow.version == alert.version)
                .values(version=alert.version + 1, **_values(alert))
            )
            if result.rowcount == 0:
                if await session.get(AlertRow, alert.alert_id) is None:
                    raise NotFoundError("Alert", alert_id=alert.alert_id)
                raise AlertConflict(alert.alert_id)
            await session.commit()
        alert.version += 1

    async def get(self, alert_id: str) -> Optional[Alert]:
        async with self._session_factory() as session:
            row = await session.get(AlertRow, alert_id)
            return _from_row(row) if row else None

    async def list(self, status: Optional[AlertStatus] = None) -> List[Alert]:
        stmt = select(AlertRow).order_by(AlertRow.created_at.desc())
        if status is not None:
            stmt = stmt.where(AlertRow.status == status.value)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [_from_row(r) for r in rows]

    async def find_open(self, alert_type: AlertType, affected: List[str]) -> Optional[Alert]:
        stmt = select(AlertRow).where(AlertRow.open_key == open_key(alert_type, affected))
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
        return _from_row(row) if row else None
