"""
FastAPI routes: operator alert lifecycle.

    GET  /api/v1/alerts                    — list, optionally by status
    GET  /api/v1/alerts/summary            — counts by severity / status
    GET  /api/v1/alerts/{id}               — one alert
    POST /api/v1/alerts/{id}/acknowledge   — take ownership
    POST /api/v1/alerts/{id}/resolve       — close
    POST /api/v1/alerts/{id}/escalate      — raise escalation level
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.api.schemas import AcknowledgeRequest, EscalateRequest, ResolveRequest, ok
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.models import AlertStatus

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.get("", summary="List alerts")
async def list_alerts(
    status: Optional[AlertStatus] = Query(None),
    engine: DeliveryEngine = Depends(get_engine),
):
    alerts = await engine.alerts.list_alerts(status)
    return {"success": True, "data": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.get("/summary", summary="Alert counts")
async def alert_summary(engine: DeliveryEngine = Depends(get_engine)):
    return {"success": True, "data": await engine.alerts.get_summary()}


@router.get("/{alert_id}", summary="Get one alert")
async def get_alert(alert_id: str, engine: DeliveryEngine = Depends(get_engine)):
    alert = await engine.alerts.get_alert(alert_id)
    return {"success": True, "data": alert.to_dict()}


@router.post("/{alert_id}/acknowledge", summary="Acknowledge an alert")
async def acknowledge_alert(
    alert_id: str, body: AcknowledgeRequest, engine: DeliveryEngine = Depends(get_engine),
):
    alert = await engine.alerts.acknowledge(alert_id, body.actor, body.notes)
    return ok(alert.to_dict(), message="acknowledged")


@router.post("/{alert_id}/resolve", summary="Resolve an alert")
async def resolve_alert(
    alert_id: str, body: ResolveRequest, engine: DeliveryEngine = Depends(get_engine),
):
    alert = await engine.alerts.resolve(alert_id, body.actor, body.resolution, body.notes)
    return ok(alert.to_dict(), message="resolved")


@router.post("/{alert_id}/escalate", summary="Escalate an alert")
async def escalate_alert(
    alert_id: str, body: EscalateRequest, engine: DeliveryEngine = Depends(get_engine),
):
    alert = await engine.alerts.escalate(alert_id, body.reason)
    return ok(alert.to_dict(), message="escalated")
