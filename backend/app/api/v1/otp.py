"""
FastAPI routes: verification codes.

    POST /api/v1/otp/send        — issue a code and deliver it with failover
    POST /api/v1/otp/retry/{id}  — resend a code through providers not yet tried
    POST /api/v1/otp/verify      — check a code
    GET  /api/v1/otp/rate-limit  — sends left for a destination this hour and day
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from backend.app.api.deps import get_engine
from backend.app.api.schemas import RetryDeliveryRequest, SendCodeRequest, VerifyCodeRequest, ok
from backend.app.core.errors import ValidationError
from backend.app.delivery.code_store import IssuedCode
from backend.app.delivery.codes import VerifyResult
from backend.app.delivery.contacts import infer_channel, is_valid_contact, mask_contact
from backend.app.delivery.engine import DeliveryEngine
from backend.app.delivery.models import DeliveryChannel, DeliveryErrorCode, DeliveryOutcome

router = APIRouter(prefix="/api/v1/otp", tags=["otp"])

_FAILURE_STATUS = {
    DeliveryErrorCode.INVALID_DESTINATION: 422,
    DeliveryErrorCode.STORAGE_ERROR: 503,
    DeliveryErrorCode.TIMEOUT_EXCEEDED: 504,
}


def public_outcome(outcome: DeliveryOutcome) -> Dict[str, Any]:
    """Outcome as returned to clients, with destinations masked."""
    data = outcome.to_dict()
    for attempt in data["attempts"]:
        attempt["destination"] = mask_contact(attempt["destination"])
    return data


def _delivery_response(outcome: DeliveryOutcome, issued: Optional[IssuedCode]):
    data = public_outcome(outcome)
    if issued is None:
        reason = outcome.reason or DeliveryErrorCode.TRANSIENT_PROVIDER_ERROR
        return JSONResponse(
            status_code=_FAILURE_STATUS.get(reason, 502),
            content={"success": False, "message": reason.value, "data": data},
        )
    data["code"] = issued.to_dict()
    return ok(data, message="Verification code sent")


@router.post("/send", summary="Issue and deliver a verification code")
async def send_code(body: SendCodeRequest, engine: DeliveryEngine = Depends(get_engine)):
    outcome, issued = await engine.codes.issue(
        body.destination, body.channel, body.purpose,
        fallback_destination=body.fallback_destination,
        preferences=body.preferences.to_domain() if body.preferences else None,
    )
    return _delivery_response(outcome, issued)


@router.post("/retry/{delivery_id}", summary="Resend through providers not yet tried")
async def retry_delivery(
    delivery_id: str,
    body: Optional[RetryDeliveryRequest] = None,
    engine: DeliveryEngine = Depends(get_engine),
):
    outcome, issued = await engine.codes.retry(delivery_id, body.channel if body else None)
    return _delivery_response(outcome, issued)


@router.post("/verify", summary="Verify a code")
async def verify_code(body: VerifyCodeRequest, engine: DeliveryEngine = Depends(get_engine)):
    result = await engine.codes.verify(body.destination, body.purpose, body.code, body.channel)
    data = {"destination": mask_contact(body.destination), "purpose": body.purpose, "result": result.value}
    if result != VerifyResult.VERIFIED:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": result.value, "data": data},
        )
    return ok(data, message=result.value)


@router.get("/rate-limit", summary="Codes a destination may still request")
async def rate_limit_status(
    destination: str = Query(..., min_length=3, max_length=320),
    channel: Optional[DeliveryChannel] = Query(None),
    engine: DeliveryEngine = Depends(get_engine),
):
    channel = channel or infer_channel(destination)
    if not is_valid_contact(channel, destination):
        raise ValidationError(
            f"Invalid {channel.value} destination", field="destination",
            error_code="invalid_destination",
        )
    return ok(await engine.codes.rate_limit_status(destination, channel))
