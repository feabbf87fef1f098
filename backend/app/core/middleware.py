"""
Request middleware — logging, timing, correlation IDs.

Provides:
    • X-Request-ID header injection (correlation ID)
    • Request/response timing (X-Process-Time header)
    • One log line per request, with contacts in the query string masked
    • Request context for downstream log enrichment

Phone numbers and email addresses reach the API as query parameters
(delivery-history filters), so the logged query string is scrubbed the
same way ledger responses are.
"""

from __future__ import annotations

import logging
import time
import uuid
from urllib.parse import parse_qsl, urlencode

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context
from backend.app.delivery.contacts import mask_contact

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_CONTACT_PARAMS = frozenset({"destination", "contact", "fallback_destination"})

# Above the provider timeout budget of a single attempt
SLOW_REQUEST_MS = 5000.0


def scrub_query(query: str) -> str:
    """Query string with contact-bearing parameters masked."""
    if not query:
        return ""
    pairs = [
        (k, mask_contact(v) if k in _CONTACT_PARAMS else v)
        for k, v in parse_qsl(query, keep_blank_values=True)
    ]
    return urlencode(pairs, safe="*@+")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing, inject correlation ID.

    Request log entry includes:
        - method, path (scrubbed query), status_code
        - duration_ms
        - client IP
        - request_id (also returned in X-Request-ID response header)

    Responses of 4xx/5xx and requests slower than SLOW_REQUEST_MS log at
    WARNING.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        query = scrub_query(request.url.query)
        target = f"{path}?{query}" if query else path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )

        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, target, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not any(path.startswith(p) for p in _QUIET_PREFIXES):
            slow = duration_ms > SLOW_REQUEST_MS
            log_level = logging.WARNING if response.status_code >= 400 or slow else logging.INFO
            logger.log(
                log_level,
                "%s %s → %d (%.1fms)%s [%s]",
                request.method, target, response.status_code,
                duration_ms, " SLOW" if slow else "", client_ip,
                extra={
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()

        return response
