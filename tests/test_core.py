"""
test_core.py — Logging, cache fallback and the error hierarchy.

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import asyncio
import json
import logging

from backend.app.core.cache import cached, ping_redis
from backend.app.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    RequestContextFilter,
    set_request_context,
)


def _record(msg="Attempt recorded", **extra) -> logging.LogRecord:
    record = logging.LogRecord("backend.app.delivery.ledger", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Logging
# ═══════════════════════════════════════════════════════════════════════════

class TestLogging:

    def test_json_includes_delivery_fields(self):
        line = JSONFormatter().format(_record(delivery_id="dlv_1", provider="twilio", channel="sms"))
        entry = json.loads(line)
        assert entry["message"] == "Attempt recorded"
        assert entry["delivery_id"] == "dlv_1"
        assert entry["provider"] == "twilio"
        assert "alert_id" not in entry

    def test_filter_copies_request_context(self):
        set_request_context(request_id="req-abc", endpoint="/api/v1/otp/send")
        try:
            record = _record()
            assert RequestContextFilter().filter(record) is True
        finally:
            set_request_context()

        entry = json.loads(JSONFormatter().format(record))
        assert entry["request_id"] == "req-abc"
        assert entry["endpoint"] == "/api/v1/otp/send"

    def test_filter_keeps_explicit_extra(self):
        set_request_context(request_id="from-context")
        try:
            record = _record(request_id="explicit")
            RequestContextFilter().filter(record)
        finally:
            set_request_context()
        assert record.request_id == "explicit"

    def test_pretty_tags(self):
        line = PrettyFormatter().format(_record(request_id="0123456789", alert_id="ALT-1"))
        assert "[01234567]" in line
        assert "<ALT-1>" in line


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Cache
# ═══════════════════════════════════════════════════════════════════════════

class TestCacheFallback:

    def test_disabled_cache_always_loads(self):
        calls = []

        async def loader():
            calls.append(1)
            return {"total": len(calls)}

        async def scenario():
            first = await cached("metrics:1", loader, ttl=5)
            second = await cached("metrics:1", loader, ttl=5)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == ({"total": 1}, False)
        assert second == ({"total": 2}, False)

    def test_ping_without_redis(self):
        assert asyncio.run(ping_redis()) is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Errors
# ═══════════════════════════════════════════════════════════════════════════

class TestErrors:

    def test_codes_and_statuses(self):
        cases = [
            (NotFoundError("Alert", alert_id="ALT-1"), 404, "alert_not_found"),
            (ValidationError("bad", field="destination"), 422, "invalid_input"),
            (InvalidTransitionError("alert", "ALT-1", "resolved", "acknowledge"), 409, "invalid_transition"),
            (StorageError("record_attempt", "down"), 503, "storage_error"),
            (RateLimitError(retry_after=30), 429, "rate_limited"),
        ]
        for exc, status, code in cases:
            assert (exc.status_code, exc.error_code) == (status, code)

    def test_details(self):
        exc = ValidationError("bad", field="destination", error_code="invalid_destination")
        assert exc.details == {"field": "destination"}
        assert RateLimitError(retry_after=30).details == {"retry_after_seconds": 30}
