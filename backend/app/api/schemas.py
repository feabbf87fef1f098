"""
Pydantic schemas for the delivery API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from backend.app.delivery.issue_reports import DESCRIPTION_MAX, DESCRIPTION_MIN, IssueReportType
from backend.app.delivery.models import DeliveryChannel, DeliveryPreferences


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------

class CommandResponse(BaseModel):
    """Every command answers {success, message?, data?}."""
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------

class PreferencesBody(BaseModel):
    """Per-send routing choices; omitted fields keep the defaults."""
    preferred_channel: Optional[DeliveryChannel] = Field(None, description="Omit for auto")
    preferred_provider: Optional[str] = Field(None, max_length=64, examples=["twilio"])
    allow_fallback: bool = True
    fallback_order: List[str] = Field(default_factory=list, max_length=10, examples=[["gateway", "smtp"]])

    def to_domain(self) -> DeliveryPreferences:
        return DeliveryPreferences(
            preferred_channel=self.preferred_channel,
            preferred_provider=self.preferred_provider,
            allow_fallback=self.allow_fallback,
            fallback_order=tuple(self.fallback_order),
        )


class SendCodeRequest(BaseModel):
    """Request body for POST /api/v1/otp/send."""
    destination: str = Field(..., min_length=3, max_length=320, examples=["+14155550123"])
    channel: Optional[DeliveryChannel] = Field(
        None, description="Omit to use the preferred channel or infer it from the destination",
        examples=["sms"],
    )
    purpose: str = Field("verification", max_length=64, examples=["login"])
    fallback_destination: Optional[str] = Field(
        None, max_length=320,
        description="Contact on the other channel, used if the first channel fails",
        examples=["jane@example.com"],
    )
    preferences: Optional[PreferencesBody] = None


class RetryDeliveryRequest(BaseModel):
    """Request body for POST /api/v1/otp/retry/{delivery_id}."""
    channel: Optional[DeliveryChannel] = Field(None, description="Defaults to the original channel")


class VerifyCodeRequest(BaseModel):
    """Request body for POST /api/v1/otp/verify."""
    destination: str = Field(..., min_length=3, max_length=320)
    purpose: str = Field("verification", max_length=64)
    code: str = Field(..., min_length=1, max_length=12, examples=["482913"])
    channel: Optional[DeliveryChannel] = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AcknowledgeRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=128, examples=["oncall@ops"])
    notes: Optional[str] = Field(None, max_length=2000)


class ResolveRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=128)
    resolution: str = Field(..., min_length=1, max_length=500, examples=["Provider recovered"])
    notes: Optional[str] = Field(None, max_length=2000)


class EscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, examples=["No response from on-call"])


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

class ConnectivityTestRequest(BaseModel):
    """Request body for POST /api/v1/connectivity-test."""
    channel: DeliveryChannel
    contact: str = Field(..., min_length=1, max_length=320)


class IssueReportRequest(BaseModel):
    """Request body for POST /api/v1/issue-reports."""
    type: IssueReportType = Field(..., examples=["delivery_failure"])
    description: str = Field(..., min_length=DESCRIPTION_MIN, max_length=DESCRIPTION_MAX)
    delivery_id: Optional[str] = Field(None, max_length=64)
    channel: Optional[DeliveryChannel] = None
    contact: Optional[str] = Field(None, max_length=320)
