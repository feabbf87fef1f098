"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • The {success, message, error} response envelope used by every route
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        DeliveryEngineError,
        NotFoundError,
        ValidationError,
        StorageError,
        InvalidTransitionError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", alert_id="ALT-3A7B")

Failures never escape the API boundary as raw exceptions: every handler
below answers with ``success: false`` and a machine-readable ``message``.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryEngineError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(DeliveryEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code=f"{resource.lower().replace(' ', '_')}_not_found",
            details=details,
        )


class ValidationError(DeliveryEngineError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        error_code: str = "invalid_input",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code=error_code,
            details=d,
        )


class InvalidTransitionError(DeliveryEngineError):
    """A lifecycle operation is not allowed from the current state (409)."""

    def __init__(self, entity: str, entity_id: str, current: str, action: str):
        super().__init__(
            message=f"Cannot {action} {entity} {entity_id} in status '{current}'",
            status_code=409,
            error_code="invalid_transition",
            details={
                "entity": entity,
                "id": entity_id,
                "status": current,
                "action": action,
            },
        )


class RetryUnavailableError(DeliveryEngineError):
    """A delivery cannot be retried: code gone or no untried provider left (409)."""

    def __init__(self, reason: str, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=409,
            error_code=reason,
            details=details,
        )


class StorageError(DeliveryEngineError):
    """Ledger / store write failed after bounded retries (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Storage operation '{operation}' failed: {message}",
            status_code=503,
            error_code="storage_error",
            details={"operation": operation, **details},
        )


class RateLimitError(DeliveryEngineError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limited",
            details={"retry_after_seconds": retry_after},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build the failure envelope: {success: false, message: <code>, error: {...}}."""
    body: Dict[str, Any] = {
        "success": False,
        "message": error_code,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(DeliveryEngineError)
    async def handle_engine_error(request: Request, exc: DeliveryEngineError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.details["retry_after_seconds"])}
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request, headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed: %s", exc.errors())
        return _build_error_response(
            422, "invalid_input", "Request body or query is invalid",
            {"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
                for e in exc.errors()
            ]},
            request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "invalid_input", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "internal_error", message, details, request,
        )
