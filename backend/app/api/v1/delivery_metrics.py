"""
FastAPI routes: delivery monitoring.

    GET /api/v1/delivery-metrics           — aggregate metrics (Redis-cached)
    GET /api/v1/delivery-metrics/health    — per-provider health + aggregate
    GET /api/v1/delivery-metrics/alerts    — open alerts + summary
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.core.cache import cached
from backend.app.core.config import settings
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.models import DeliveryChannel

router = APIRouter(prefix="/api/v1/delivery-metrics", tags=["delivery-metrics"])


@router.get("", summary="Aggregate delivery metrics")
async def get_metrics(
    hours: int = Query(24, ge=1, le=720, description="Look-back window in hours"),
    engine: DeliveryEngine = Depends(get_engine),
):
    metrics, hit = await cached(
        f"metrics:{hours}", lambda: engine.ledger.get_metrics(hours), ttl=settings.METRICS_CACHE_TTL,
    )
    return {"success": True, "data": metrics, "cached": hit}


@router.get("/health", summary="Provider health")
async def get_health(
    provider_id: Optional[str] = Query(None, description="Filter by provider id"),
    channel: Optional[DeliveryChannel] = Query(None, description="Filter by channel"),
    engine: DeliveryEngine = Depends(get_engine),
):
    snapshot = engine.health.get_system_health()
    providers = engine.health.get_health(provider_id=provider_id, channel=channel)
    data = snapshot.to_dict()
    data["providers"] = [p.to_dict() for p in providers]
    return {"success": True, "data": data}


@router.get("/alerts", summary="Open alerts and summary")
async def get_open_alerts(engine: DeliveryEngine = Depends(get_engine)):
    active = await engine.alerts.get_active()
    summary = await engine.alerts.get_summary()
    return {
        "success": True,
        "data": {"alerts": [a.to_dict() for a in active], "summary": summary},
    }
