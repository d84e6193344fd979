"""Email sending service.

Supports two backends:
- SMTP via aiosmtplib (production)
- Log-only (development / testing), which logs the message instead of sending

Set EMAIL_BACKEND=smtp and configure SMTP_* settings for production.
"""

import logging
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from visaflow.config import settings

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class LogEmailSender:
    """Development sender: logs email content instead of sending."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("EMAIL to=%s subject=%s\n%s", to, subject, body)


class SmtpEmailSender:
    async def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = settings.smtp_from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
        )


def get_email_sender() -> EmailSender:
    if settings.email_backend == "smtp":
        return SmtpEmailSender()
    return LogEmailSender()


def render_notification_email(title: str, message: str, link: str | None) -> tuple[str, str]:
    """Build (subject, body) for a notification delivered over email."""
    subject = f"[VisaFlow] {title}"
    body = f"{message}\n"
    if link:
        body += f"\nView it here: {settings.base_url.rstrip('/')}{link}\n"
    body += "\nYou are receiving this because of activity on your VisaFlow account."
    return subject, body
