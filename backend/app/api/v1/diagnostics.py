"""
FastAPI routes: user-facing diagnostics.

    POST /api/v1/connectivity-test        — single-shot reachability check
    POST /api/v1/issue-reports            — submit a delivery complaint
    GET  /api/v1/issue-reports            — list reports
    GET  /api/v1/issue-reports/{id}       — one report
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from backend.app.api.deps import get_engine
from backend.app.api.schemas import ConnectivityTestRequest, IssueReportRequest, ok
from backend.app.delivery.connectivity import ConnectivityFailure
from backend.app.delivery.engine import DeliveryEngine

router = APIRouter(prefix="/api/v1", tags=["diagnostics"])


@router.post("/connectivity-test", summary="Test whether a contact is reachable")
async def connectivity_test(body: ConnectivityTestRequest, engine: DeliveryEngine = Depends(get_engine)):
    result = await engine.connectivity.test(body.channel, body.contact)
    if result["message"] == ConnectivityFailure.INVALID_CONTACT.value:
        return JSONResponse(status_code=400, content=result)
    return result


@router.post("/issue-reports", summary="Submit an issue report")
async def submit_report(body: IssueReportRequest, engine: DeliveryEngine = Depends(get_engine)):
    report = await engine.reports.submit(
        body.type, body.description,
        delivery_id=body.delivery_id, channel=body.channel, contact=body.contact,
    )
    return ok(report.to_dict(), message="Issue report submitted")


@router.get("/issue-reports", summary="List issue reports")
async def list_reports(
    status: Optional[str] = Query(None),
    engine: DeliveryEngine = Depends(get_engine),
):
    reports = await engine.reports.list(status)
    return {"success": True, "data": [r.to_dict() for r in reports], "count": len(reports)}


@router.get("/issue-reports/{report_id}", summary="Get one issue report")
async def get_report(report_id: str, engine: DeliveryEngine = Depends(get_engine)):
    report = await engine.reports.get(report_id)
    return {"success": True, "data": report.to_dict()}
