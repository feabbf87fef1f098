"""
orm.py — SQL tables for the durable stores (STORAGE_BACKEND=sql).

    delivery_attempts   one row per provider call, terminal status updated once
    delivery_alerts     alert lifecycle, never deleted; open_key is unique while
                        an alert is open and NULL once it is resolved
    issue_reports       user-submitted delivery complaints
    verification_codes  one live code per (destination, purpose), hash only
    verification_code_sends
                        send timestamps for the per-destination caps

Enum columns are stored as their string values so the rows stay readable
from plain SQL.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


class DeliveryAttemptRow(Base):
    __tablename__ = "delivery_attempts"

    delivery_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(32), index=True)
    provider: Mapped[str] = mapped_column(String(64), index=True)
    channel: Mapped[str] = mapped_column(String(16))
    destination: Mapped[str] = mapped_column(String(320), index=True)
    purpose: Mapped[str] = mapped_column(String(64), default="verification")
    status: Mapped[str] = mapped_column(String(16), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AlertRow(Base):
    __tablename__ = "delivery_alerts"

    alert_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    alert_type: Mapped[str] = mapped_column(String(32), index=True)
    severity: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, default=1)
    affected_services: Mapped[List[str]] = mapped_column(JSON, default=list)
    metrics: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledge_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    escalation_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    open_key: Mapped[Optional[str]] = mapped_column(String(512), unique=True, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)


class IssueReportRow(Base):
    __tablename__ = "issue_reports"

    report_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    report_type: Mapped[str] = mapped_column(String(32))
    description: Mapped[str] = mapped_column(Text)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    contact: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    priority: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), index=True)
    system_health: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class IssuedCodeRow(Base):
    __tablename__ = "verification_codes"

    destination: Mapped[str] = mapped_column(String(320), primary_key=True)
    purpose: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16))
    code_hash: Mapped[str] = mapped_column(String(64))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempts_left: Mapped[int] = mapped_column(Integer)
    request_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CodeSendRow(Base):
    __tablename__ = "verification_code_sends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination: Mapped[str] = mapped_column(String(320), index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
