"""
contacts.py — Contact validation, masking and the account-storage seam.

The engine never owns user records. It validates the destination it is
handed, masks it for logs and API responses, and asks an injected
ContactDirectory for an alternate contact when a delivery has to fall
back to the other channel.

═══════════════════════════════════════════════════════════════════════════
FORMATS
═══════════════════════════════════════════════════════════════════════════

    SMS    E.164, checked against the numbering plan     "+14155550123"
    Email  RFC 5322 address, syntax only (no DNS)         "jane@example.com"

Phone numbers are parsed with `phonenumbers`, so "+1 (415) 555-0123" is
accepted and stored as "+14155550123", while "+10000000000" (no such
area code) is rejected. Addresses go through `email-validator` with the
deliverability check switched off; the engine never blocks on DNS.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional

import phonenumbers
from email_validator import EmailNotValidError, validate_email

from backend.app.delivery.models import DeliveryChannel


def _parse_phone(contact: str) -> Optional[phonenumbers.PhoneNumber]:
    try:
        return phonenumbers.parse(contact, None)
    except phonenumbers.NumberParseException:
        return None


def normalize_contact(channel: DeliveryChannel, contact: str) -> str:
    """
    Canonical form of a contact for the given channel.

    Never raises: input that cannot be parsed comes back trimmed (and
    lower-cased for email) so lookups still work on whatever was stored.
    """
    contact = (contact or "").strip()
    if channel == DeliveryChannel.SMS:
        parsed = _parse_phone(contact)
        if parsed is not None and phonenumbers.is_possible_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
        return contact
    try:
        return validate_email(contact, check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        return contact.lower()


def is_valid_contact(channel: DeliveryChannel, contact: str) -> bool:
    contact = (contact or "").strip()
    if channel == DeliveryChannel.SMS:
        # international format only; no default region is assumed
        if not contact.startswith("+"):
            return False
        parsed = _parse_phone(contact)
        return parsed is not None and phonenumbers.is_valid_number(parsed)
    try:
        validate_email(contact, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def mask_contact(contact: Optional[str]) -> Optional[str]:
    """
    Hide most of a contact for logs and responses.

        "+14155550123"      → "+1******0123"
        "jane@example.com"  → "ja**@example.com"
    """
    if not contact:
        return contact
    if "@" in contact:
        local, _, domain = contact.partition("@")
        visible = local[:2]
        return f"{visible}{'*' * max(len(local) - len(visible), 1)}@{domain}"
    if len(contact) <= 6:
        return "*" * len(contact)
    return f"{contact[:2]}{'*' * (len(contact) - 6)}{contact[-4:]}"


def infer_channel(contact: str) -> DeliveryChannel:
    return DeliveryChannel.EMAIL if "@" in (contact or "") else DeliveryChannel.SMS


def alternate_channel(channel: DeliveryChannel) -> DeliveryChannel:
    if channel == DeliveryChannel.SMS:
        return DeliveryChannel.EMAIL
    return DeliveryChannel.SMS


# ═══════════════════════════════════════════════════════════════════════════
# Account-storage collaborator
# ═══════════════════════════════════════════════════════════════════════════

class ContactDirectory(ABC):
    """Looks up a user's other contact (account storage lives elsewhere)."""

    @abstractmethod
    async def alternate_contact(
        self, destination: str, channel: DeliveryChannel,
    ) -> Optional[str]:
        """Contact for `channel` belonging to whoever owns `destination`."""


class StaticContactDirectory(ContactDirectory):
    """
    In-memory directory (production: user/account service).

    Pairs are registered as (phone, email) and resolved in both directions.
    """

    def __init__(self, pairs: Optional[Dict[str, str]] = None) -> None:
        self._by_phone: Dict[str, str] = {}
        self._by_email: Dict[str, str] = {}
        for phone, email in (pairs or {}).items():
            self.register(phone, email)

    def register(self, phone: str, email: str) -> None:
        phone = normalize_contact(DeliveryChannel.SMS, phone)
        email = normalize_contact(DeliveryChannel.EMAIL, email)
        self._by_phone[phone] = email
        self._by_email[email] = phone

    async def alternate_contact(
        self, destination: str, channel: DeliveryChannel,
    ) -> Optional[str]:
        if channel == DeliveryChannel.EMAIL:
            return self._by_phone.get(normalize_contact(DeliveryChannel.SMS, destination))
        return self._by_email.get(normalize_contact(DeliveryChannel.EMAIL, destination))
