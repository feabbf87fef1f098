"""
engine.py — Composition root for the delivery subsystem.

Builds every service from settings and owns their lifecycle:

    ProviderRegistry ─┐
    HealthMonitor ────┼─> DeliveryOrchestrator ─> VerificationCodeService
    DeliveryLedger ───┘         │
                                ├─> ConnectivityTester
    AlertEngine <── health transitions, ledger failure stats
    IssueReportService
    MonitoringScheduler (probes + alert ticks)

The FastAPI app holds one DeliveryEngine on ``app.state.engine``; tests
build their own with simulated providers and in-memory stores.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.database import build_engine, init_db, session_factory
from backend.app.delivery.alert_engine import AlertEngine, AlertThresholds
from backend.app.delivery.alert_store import InMemoryAlertStore, SqlAlertStore
from backend.app.delivery.code_store import InMemoryCodeStore, SqlCodeStore
from backend.app.delivery.codes import VerificationCodeService
from backend.app.delivery.connectivity import ConnectivityTester
from backend.app.delivery.contacts import ContactDirectory, StaticContactDirectory
from backend.app.delivery.health_monitor import HealthMonitor, HealthThresholds
from backend.app.delivery.issue_reports import (
    InMemoryIssueReportStore,
    IssueReportService,
    SqlIssueReportStore,
)
from backend.app.delivery.ledger import DeliveryLedger, InMemoryLedger, RetryConfig, SqlLedger
from backend.app.delivery.orchestrator import DeliveryOrchestrator
from backend.app.delivery.providers.registry import ProviderRegistry
from backend.app.delivery.scheduler import MonitoringScheduler

logger = logging.getLogger(__name__)


class DeliveryEngine:
    """All delivery services, wired together."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        cfg: Optional[Settings] = None,
        contacts: Optional[ContactDirectory] = None,
        sql_engine: Optional[AsyncEngine] = None,
    ) -> None:
        cfg = cfg or default_settings
        self.cfg = cfg
        self.sql_engine = sql_engine

        if sql_engine is not None:
            factory = session_factory(sql_engine)
            ledger_store, alert_store, report_store, code_store = (
                SqlLedger(factory), SqlAlertStore(factory),
                SqlIssueReportStore(factory), SqlCodeStore(factory),
            )
        else:
            ledger_store, alert_store, report_store, code_store = (
                InMemoryLedger(), InMemoryAlertStore(),
                InMemoryIssueReportStore(), InMemoryCodeStore(),
            )

        self.registry = registry
        self.contacts = contacts or StaticContactDirectory()
        self.health = HealthMonitor(HealthThresholds.from_settings(cfg))
        retry = RetryConfig(
            max_attempts=cfg.STORAGE_RETRY_ATTEMPTS,
            backoff_base_seconds=cfg.STORAGE_RETRY_BASE_SECONDS,
        )
        self.ledger = DeliveryLedger(ledger_store, retry=retry)
        self.orchestrator = DeliveryOrchestrator(
            registry, self.health, self.ledger,
            contacts=self.contacts,
            max_attempts=cfg.DELIVERY_MAX_ATTEMPTS,
            deadline_seconds=cfg.DELIVERY_DEADLINE_SECONDS,
            channel_fallback_enabled=cfg.CHANNEL_FALLBACK_ENABLED,
        )
        self.alerts = AlertEngine(
            self.health, self.ledger, alert_store,
            thresholds=AlertThresholds.from_settings(cfg),
        )
        self.codes = VerificationCodeService(
            self.orchestrator,
            store=code_store,
            retry=retry,
            secret_key=cfg.SECRET_KEY,
            code_length=cfg.OTP_LENGTH,
            ttl_minutes=cfg.OTP_TTL_MINUTES,
            max_attempts=cfg.OTP_MAX_VERIFY_ATTEMPTS,
            resend_cooldown_seconds=cfg.OTP_RESEND_COOLDOWN_SECONDS,
            max_sends_per_hour=cfg.OTP_MAX_SENDS_PER_HOUR,
            max_sends_per_day=cfg.OTP_MAX_SENDS_PER_DAY,
            app_name=cfg.APP_NAME,
        )
        self.connectivity = ConnectivityTester(self.orchestrator, app_name=cfg.APP_NAME)
        self.reports = IssueReportService(self.health, report_store)
        self.scheduler = MonitoringScheduler(
            registry, self.health, self.alerts,
            probe_interval=cfg.PROBE_INTERVAL_SECONDS,
            tick_interval=cfg.ALERT_TICK_SECONDS,
            probes_enabled=cfg.PROBES_ENABLED,
        )

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "DeliveryEngine":
        cfg = cfg or default_settings
        sql_engine = None
        if cfg.STORAGE_BACKEND == "sql":
            sql_engine = build_engine(cfg.DATABASE_URL, echo=cfg.DATABASE_ECHO)
        return cls(ProviderRegistry.from_settings(cfg), cfg=cfg, sql_engine=sql_engine)

    async def start(self, *, run_scheduler: Optional[bool] = None) -> None:
        if self.sql_engine is not None:
            await init_db(self.sql_engine)
        if self.cfg.SCHEDULER_ENABLED if run_scheduler is None else run_scheduler:
            self.scheduler.start()
        logger.info(
            "Delivery engine started (storage=%s, providers=%d)",
            "sql" if self.sql_engine is not None else "memory", len(self.registry.all()),
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.drain()
        await self.health.drain()
        await self.registry.close()
        if self.sql_engine is not None:
            await self.sql_engine.dispose()
        logger.info("Delivery engine stopped")
