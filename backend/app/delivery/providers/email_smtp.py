"""
email_smtp.py — SMTP email adapter.

smtplib is blocking, so each send runs in a worker thread through
asyncio.to_thread; the orchestrator's per-provider timeout still bounds
the wait.

Message: multipart/alternative with a plain-text part and an HTML part,
both rendered from the shared verification-code templates.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

from backend.app.delivery.codes import render_email
from backend.app.delivery.contacts import mask_contact
from backend.app.delivery.models import DeliveryChannel, MessagePayload
from backend.app.delivery.providers.base import ProviderAdapter, SendResult

logger = logging.getLogger(__name__)


class SmtpEmailProvider(ProviderAdapter):
    kind = "smtp"

    def __init__(
        self,
        provider_id: str,
        *,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: str = "no-reply@otp-delivery.local",
        **kwargs,
    ) -> None:
        kwargs.pop("channels", None)
        super().__init__(provider_id, frozenset({DeliveryChannel.EMAIL}), **kwargs)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address

    def _build_message(self, destination: str, payload: MessagePayload) -> MIMEMultipart:
        subject, html_body, plain_body = render_email(payload)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = destination
        msg["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1])
        msg.attach(MIMEText(plain_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds)
        if self.use_tls:
            server.starttls(context=ssl.create_default_context())
        if self.username:
            server.login(self.username, self.password or "")
        return server

    def _send_blocking(self, destination: str, payload: MessagePayload) -> SendResult:
        msg = self._build_message(destination, payload)
        try:
            with self._connect() as server:
                server.sendmail(self.from_address, [destination], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            return SendResult.permanent(f"recipient refused: {list(exc.recipients)}")
        except smtplib.SMTPAuthenticationError as exc:
            return SendResult.permanent(f"authentication failed: {exc.smtp_code}", status_code=exc.smtp_code)
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                return SendResult.transient(f"SMTP {exc.smtp_code}", status_code=exc.smtp_code)
            return SendResult.permanent(f"SMTP {exc.smtp_code}", status_code=exc.smtp_code)
        except (smtplib.SMTPException, OSError) as exc:
            return SendResult.transient(f"SMTP connection error: {exc}")
        return SendResult.ok(msg["Message-ID"])

    async def _send(
        self, destination: str, channel: DeliveryChannel, payload: MessagePayload,
    ) -> SendResult:
        result = await asyncio.to_thread(self._send_blocking, destination, payload)
        if result.success:
            logger.info("[EMAIL/SMTP] Sent to %s via %s", mask_contact(destination), self.host)
        else:
            logger.warning(
                "[EMAIL/SMTP] %s → %s: %s", self.provider_id, mask_contact(destination), result.error,
            )
        return result

    def _noop_blocking(self) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
                code, _ = server.noop()
                return code == 250
        except (smtplib.SMTPException, OSError):
            return False

    async def probe(self, channel: DeliveryChannel) -> bool:
        return await asyncio.to_thread(self._noop_blocking)
