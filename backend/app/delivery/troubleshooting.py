"""
troubleshooting.py — User-facing guidance for a delivery's attempt chain.

Two lookups feed the diagnostics endpoint:

    for_error(error, kind)          provider error text → {issue, solution, steps}
    recommendations(status, ...)    final status → prioritised actions + next steps

Error matching is by substring on the lower-cased provider message; the
first pattern that matches wins, and anything unmatched falls back to a
generic entry keyed by the error kind.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from backend.app.delivery.models import DeliveryChannel, DeliveryStatus, ErrorKind

_PATTERNS: List[Tuple[Tuple[str, ...], Dict[str, Any]]] = [
    (("invalid phone", "not a valid phone", "invalid 'to'", "unreachable number"), {
        "issue": "invalid_phone_number",
        "solution": "Check the phone number, including the country code",
        "steps": [
            "Enter the number in international format, e.g. +14155550123",
            "Make sure the number can receive SMS",
            "Try email delivery instead",
        ],
    }),
    (("invalid email", "recipient refused", "mailbox unavailable", "no such user"), {
        "issue": "invalid_email",
        "solution": "Check the email address for typos",
        "steps": [
            "Confirm the address is spelled correctly",
            "Check that the mailbox exists and is not full",
            "Try SMS delivery instead",
        ],
    }),
    (("rate limit", "too many requests", "throttl"), {
        "issue": "rate_limited",
        "solution": "The provider is throttling requests; wait before trying again",
        "steps": [
            "Wait a few minutes before requesting a new code",
            "Avoid requesting several codes in a row",
        ],
    }),
    (("service unavailable", "timeout", "connection error", "503"), {
        "issue": "service_unavailable",
        "solution": "The provider was temporarily unreachable",
        "steps": [
            "Retry the delivery; another provider will be used",
            "Check the service status page if the problem persists",
        ],
    }),
    (("authentication failed", "unauthorized", "forbidden"), {
        "issue": "provider_misconfigured",
        "solution": "The provider rejected our credentials; support has to fix this",
        "steps": [
            "Retry the delivery; another provider will be used",
            "Report the issue so support can check the provider account",
        ],
    }),
]

_BY_KIND = {
    ErrorKind.TRANSIENT: {
        "issue": "temporary_failure",
        "solution": "The provider failed temporarily",
        "steps": ["Retry the delivery", "Try a different delivery method"],
    },
    ErrorKind.PERMANENT: {
        "issue": "rejected",
        "solution": "The provider refused this message",
        "steps": ["Check the contact details", "Try a different delivery method"],
    },
}
_GENERIC = {
    "issue": "unknown_error",
    "solution": "An unexpected error occurred",
    "steps": ["Try again in a few minutes", "Report the issue if it continues"],
}


def for_error(error: Optional[str], kind: Optional[ErrorKind] = None) -> Dict[str, Any]:
    text = (error or "").lower()
    for needles, entry in _PATTERNS:
        if any(n in text for n in needles):
            return _copy(entry)
    return _copy(_BY_KIND.get(kind, _GENERIC))


def _copy(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {**entry, "steps": list(entry["steps"])}


def recommendations(
    status: DeliveryStatus,
    channel: DeliveryChannel,
    error_kinds: Sequence[Optional[ErrorKind]] = (),
) -> Dict[str, Any]:
    """Actions for the final status of a chain, plus what the user does next."""
    other = DeliveryChannel.EMAIL if channel == DeliveryChannel.SMS else DeliveryChannel.SMS
    recs: List[Dict[str, Any]] = []

    if status == DeliveryStatus.FAILED:
        actions = ["Retry the delivery with a provider not yet tried"]
        if ErrorKind.PERMANENT in error_kinds:
            actions.insert(0, f"Verify the {channel.value} contact details")
        actions.append(f"Try {other.value} delivery instead")
        recs.append({
            "type": "delivery_failed",
            "priority": "high",
            "message": "The code could not be delivered",
            "actions": actions,
        })
    elif status == DeliveryStatus.DELIVERED:
        if channel == DeliveryChannel.EMAIL:
            actions = ["Check the spam or junk folder", "Wait a few minutes for the email to arrive"]
        else:
            actions = ["Wait up to a minute for the SMS", "Check the phone has signal and is not blocking short codes"]
        recs.append({
            "type": "delivery_sent",
            "priority": "medium",
            "message": "The provider accepted the message",
            "actions": actions,
        })
    elif status == DeliveryStatus.PENDING:
        recs.append({
            "type": "delivery_pending",
            "priority": "low",
            "message": "The provider has not answered yet",
            "actions": ["Wait for the attempt to finish before retrying"],
        })

    if status == DeliveryStatus.FAILED:
        next_steps = ["Request a new code", f"Try {other.value} delivery instead"]
    else:
        next_steps = ["Enter the code once it arrives", "Request a new code if it has expired"]
    return {"recommendations": recs, "next_steps": next_steps}
