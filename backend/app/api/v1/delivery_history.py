"""
FastAPI routes: delivery ledger queries.

    GET /api/v1/delivery-history                     — filtered, paginated attempts
    GET /api/v1/delivery-history/{id}/diagnostics    — full chain for a delivery or request
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_engine
from backend.app.delivery.contacts import infer_channel, normalize_contact
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.ledger import HistoryFilter
from backend.app.delivery.models import DeliveryChannel, DeliveryStatus

router = APIRouter(prefix="/api/v1/delivery-history", tags=["delivery-history"])


@router.get("", summary="Delivery attempt history")
async def list_history(
    destination: Optional[str] = Query(None),
    status: Optional[DeliveryStatus] = Query(None),
    provider: Optional[str] = Query(None),
    channel: Optional[DeliveryChannel] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    engine: DeliveryEngine = Depends(get_engine),
):
    if destination:
        destination = normalize_contact(channel or infer_channel(destination), destination)
    flt = HistoryFilter(
        destination=destination,
        status=status,
        provider=provider,
        channel=channel,
        since=since,
        until=until,
    )
    page = await engine.ledger.get_history(flt, limit=limit, offset=offset)
    return {"success": True, "data": page}


@router.get("/{delivery_id}/diagnostics", summary="Attempt chain for one delivery")
async def get_diagnostics(delivery_id: str, engine: DeliveryEngine = Depends(get_engine)):
    return {"success": True, "data": await engine.ledger.get_diagnostics(delivery_id)}
