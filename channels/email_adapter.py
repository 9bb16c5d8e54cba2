"""
Email Transports: SMTP delivery and a logging transport for development.

Provides:
- SmtpMailTransport: aiosmtplib send with HTML + plain-text alternative
- LogMailTransport: records and logs messages instead of sending
- Suppression list (bounces, complaints) shared by both
- HTML-to-plain-text conversion
- create_transport(): pick a transport from EmailConfig
"""
from __future__ import annotations

import re
import uuid
import structlog
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Optional

import aiosmtplib

from channels.base import MailTransport, RecipientSuppressedError, TransportError
from config.settings import EmailConfig

logger = structlog.get_logger()


class _SuppressionMixin:
    """Addresses that must not receive mail (permanent bounces, complaints)."""

    def _init_suppression(self):
        self._suppressed: set[str] = set()

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    def suppress(self, email: str, reason: str = "") -> None:
        self._suppressed.add(email.lower())
        logger.warning("email_suppressed", email=email.lower(), reason=reason)

    def handle_bounce(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        bounce_type = data.get("type", "transient")
        if bounce_type == "permanent":
            self.suppress(email, reason="permanent_bounce")
        else:
            logger.info("transient_bounce", email=email)
        return {"status": "processed", "email": email, "type": bounce_type}


class LogMailTransport(_SuppressionMixin, MailTransport):
    """
    Development transport: logs every message and keeps it in ``outbox``.
    Nothing leaves the process.
    """

    name = "log"

    def __init__(self, domain: str = "followdesk.local"):
        super().__init__()
        self._init_suppression()
        self._domain = domain
        self.outbox: list[dict[str, Any]] = []

    async def _do_send(self, to, subject, html, attachments=None) -> str:
        if self.is_suppressed(to):
            raise RecipientSuppressedError(to, self.name)
        message_id = f"<{uuid.uuid4().hex}@{self._domain}>"
        self.outbox.append({
            "message_id": message_id, "to": to, "subject": subject,
            "html": html, "attachments": attachments or [],
        })
        logger.info("email_logged", to=to, subject=subject, message_id=message_id)
        return message_id


class SmtpMailTransport(_SuppressionMixin, MailTransport):
    """
    Production transport over SMTP (STARTTLS by default).

    SMTP 5xx replies and refused recipients are terminal; connection
    problems, timeouts, and 4xx replies are retryable.
    """

    name = "smtp"

    def __init__(self, config: EmailConfig):
        super().__init__()
        self._init_suppression()
        self._config = config
        self._domain = config.from_email.split("@")[-1] or "localhost"

    def _build_message(self, to, subject, html, attachments) -> tuple[EmailMessage, str]:
        message_id = f"<{uuid.uuid4().hex}@{self._domain}>"
        msg = EmailMessage()
        msg["From"] = formataddr((self._config.from_name, self._config.from_email))
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = message_id
        msg.set_content(html_to_plain(html))
        msg.add_alternative(html, subtype="html")
        for att in attachments or []:
            maintype, _, subtype = att.get("content_type", "application/octet-stream").partition("/")
            msg.add_attachment(
                att["content"], maintype=maintype, subtype=subtype or "octet-stream",
                filename=att.get("filename", "attachment"),
            )
        return msg, message_id

    async def _do_send(self, to, subject, html, attachments=None) -> str:
        if self.is_suppressed(to):
            raise RecipientSuppressedError(to, self.name)
        msg, message_id = self._build_message(to, subject, html, attachments)
        smtp = self._config.smtp
        try:
            await aiosmtplib.send(
                msg,
                hostname=smtp.host,
                port=smtp.port,
                username=smtp.username or None,
                password=smtp.password or None,
                start_tls=smtp.use_tls,
                timeout=self._config.send_timeout_seconds,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise TransportError(f"Recipient refused: {e}", self.name, retryable=False) from e
        except aiosmtplib.SMTPResponseException as e:
            raise TransportError(
                f"SMTP {e.code}: {e.message}", self.name, retryable=e.code < 500,
            ) from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise TransportError(str(e) or type(e).__name__, self.name, retryable=True) from e

        logger.info("email_sent", to=to, subject=subject, message_id=message_id)
        return message_id


# ── HTML to plain text ────────────────────────────────────────

def html_to_plain(html: str) -> str:
    """Best-effort HTML → plain text without external dependencies."""
    # Remove style/script blocks
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
    # Block elements → newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    # Strip remaining tags
    text = re.sub(r"<[^>]+>", "", text)
    # Decode entities
    text = text.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
    text = text.replace("&nbsp;", " ").replace("&quot;", '"')
    # Collapse whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def create_transport(config: EmailConfig) -> MailTransport:
    if config.transport == "smtp":
        logger.info("mail_transport_created", transport="smtp", host=config.smtp.host)
        return SmtpMailTransport(config)
    logger.info("mail_transport_created", transport="log")
    return LogMailTransport(domain=config.from_email.split("@")[-1] or "followdesk.local")
