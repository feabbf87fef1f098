"""
issue_reports.py — User-submitted delivery complaints for manual triage.

A report captures what the user saw plus the system health at the moment
they saw it, so support can tell "provider outage" from "typo in the
address" without reconstructing history.

Priority:
    high    service_unavailable reports, or system health warning/critical
    normal  everything else
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.health_monitor import HealthMonitor
from backend.app.delivery.models import (
    DeliveryChannel,
    SystemHealthSnapshot,
    SystemHealthStatus,
    as_utc,
)
from backend.app.delivery.orm import IssueReportRow

logger = logging.getLogger(__name__)

DESCRIPTION_MIN = 10
DESCRIPTION_MAX = 500


class IssueReportType(str, Enum):
    DELIVERY_FAILURE    = "delivery_failure"
    CONNECTIVITY_ISSUE  = "connectivity_issue"
    SERVICE_UNAVAILABLE = "service_unavailable"
    OTHER               = "other"


class IssuePriority(str, Enum):
    NORMAL = "normal"
    HIGH   = "high"


_EXPECTED_RESPONSE = {
    IssuePriority.HIGH:   "Within 4 hours",
    IssuePriority.NORMAL: "Within 24 hours",
}

_NEXT_STEPS = {
    IssueReportType.DELIVERY_FAILURE: [
        "Support will review the delivery history for this contact",
        "The contact will be tested against each configured provider",
    ],
    IssueReportType.CONNECTIVITY_ISSUE: [
        "Provider connectivity for this channel will be verified",
        "Troubleshooting steps will follow for the affected channel",
    ],
    IssueReportType.SERVICE_UNAVAILABLE: [
        "Provider status is being checked by the on-call operator",
        "Service updates will be posted once the outage is understood",
    ],
}
_DEFAULT_STEPS = ["Support will review the report and follow up"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_ticket_id() -> str:
    return f"DIAG-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class IssueReport:
    report_id: str
    report_type: IssueReportType
    description: str
    priority: IssuePriority
    delivery_id: Optional[str] = None
    channel: Optional[DeliveryChannel] = None
    contact: Optional[str] = None  # masked
    status: str = "open"
    system_health: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)

    @property
    def expected_response(self) -> str:
        return _EXPECTED_RESPONSE[self.priority]

    @property
    def next_steps(self) -> List[str]:
        return list(_NEXT_STEPS.get(self.report_type, _DEFAULT_STEPS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "type": self.report_type.value,
            "description": self.description,
            "priority": self.priority.value,
            "delivery_id": self.delivery_id,
            "channel": self.channel.value if self.channel else None,
            "contact": self.contact,
            "status": self.status,
            "system_health": self.system_health,
            "expected_response": self.expected_response,
            "next_steps": self.next_steps,
            "created_at": self.created_at.isoformat(),
        }


def determine_priority(report_type: IssueReportType, health: SystemHealthStatus) -> IssuePriority:
    if report_type == IssueReportType.SERVICE_UNAVAILABLE:
        return IssuePriority.HIGH
    if health in (SystemHealthStatus.WARNING, SystemHealthStatus.CRITICAL):
        return IssuePriority.HIGH
    return IssuePriority.NORMAL


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class IssueReportStore(ABC):

    @abstractmethod
    async def add(self, report: IssueReport) -> None: ...

    @abstractmethod
    async def get(self, report_id: str) -> Optional[IssueReport]: ...

    @abstractmethod
    async def list(self, status: Optional[str] = None) -> List[IssueReport]:
        """Newest first."""


class InMemoryIssueReportStore(IssueReportStore):
    """Dict-backed store (production: database)."""

    def __init__(self) -> None:
        self._reports: Dict[str, IssueReport] = {}

    async def add(self, report: IssueReport) -> None:
        self._reports[report.report_id] = replace(report)

    async def get(self, report_id: str) -> Optional[IssueReport]:
        report = self._reports.get(report_id)
        return replace(report) if report else None

    async def list(self, status: Optional[str] = None) -> List[IssueReport]:
        reports = [r for r in self._reports.values() if status is None or r.status == status]
        return sorted(reports, key=lambda r: r.created_at, reverse=True)


def _from_row(row: IssueReportRow) -> IssueReport:
    return IssueReport(
        report_id=row.report_id,
        report_type=IssueReportType(row.report_type),
        description=row.description,
        priority=IssuePriority(row.priority),
        delivery_id=row.delivery_id,
        channel=DeliveryChannel(row.channel) if row.channel else None,
        contact=row.contact,
        status=row.status,
        system_health=dict(row.system_health or {}),
        created_at=as_utc(row.created_at),
    )


class SqlIssueReportStore(IssueReportStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, report: IssueReport) -> None:
        row = IssueReportRow(
            report_id=report.report_id,
            report_type=report.report_type.value,
            description=report.description,
            delivery_id=report.delivery_id,
            channel=report.channel.value if report.channel else None,
            contact=report.contact,
            priority=report.priority.value,
            status=report.status,
            system_health=report.system_health,
            created_at=report.created_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

    async def get(self, report_id: str) -> Optional[IssueReport]:
        async with self._session_factory() as session:
            row = await session.get(IssueReportRow, report_id)
            return _from_row(row) if row else None

    async def list(self, status: Optional[str] = None) -> List[IssueReport]:
        stmt = select(IssueReportRow).order_by(IssueReportRow.created_at.desc())
        if status is not None:
            stmt = stmt.where(IssueReportRow.status == status)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [_from_row(r) for r in rows]


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class IssueReportService:
    """Validates, prioritises and stores issue reports."""

    def __init__(self, health: HealthMonitor, store: Optional[IssueReportStore] = None) -> None:
        self._health = health
        self._store = store or InMemoryIssueReportStore()

    async def submit(
        self,
        report_type: IssueReportType,
        description: str,
        *,
        delivery_id: Optional[str] = None,
        channel: Optional[DeliveryChannel] = None,
        contact: Optional[str] = None,
    ) -> IssueReport:
        description = (description or "").strip()
        if not DESCRIPTION_MIN <= len(description) <= DESCRIPTION_MAX:
            raise ValidationError(
                f"Description must be {DESCRIPTION_MIN}-{DESCRIPTION_MAX} characters",
                field="description",
            )

        snapshot = self._health.get_system_health()
        report = IssueReport(
            report_id=new_ticket_id(),
            report_type=report_type,
            description=description,
            priority=determine_priority(report_type, snapshot.status),
            delivery_id=delivery_id,
            channel=channel,
            contact=mask_contact(contact),
            system_health=_health_summary(snapshot),
        )
        await self._store.add(report)
        logger.info(
            "[REPORT] %s %s priority=%s health=%s",
            report.report_id, report_type.value, report.priority.value, snapshot.status.value,
        )
        return report

    async def get(self, report_id: str) -> IssueReport:
        report = await self._store.get(report_id)
        if report is None:
            raise NotFoundError("Report", report_id=report_id)
        return report

    async def list(self, status: Optional[str] = None) -> List[IssueReport]:
        return await self._store.list(status)


def _health_summary(snapshot: SystemHealthSnapshot) -> Dict[str, Any]:
    data = snapshot.to_dict()
    data.pop("providers", None)
    return data
