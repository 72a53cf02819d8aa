"""
Email Channel — SMTP delivery for notification and receipt emails.

Provides:
- SMTP send (aiosmtplib) with HTML body and attachments
- Password reset link / OTP and order-completed sends
- ENQUEUE mode: raw sends are published as `email.raw` jobs instead
- Customer address guard and log redaction

Message bodies here are deliberately plain; rich templates belong to the
application layer.
"""
from __future__ import annotations

import base64
import re
import uuid
import structlog
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Awaitable, Callable, Optional

import aiosmtplib

from channels.base import ChannelAdapter, ChannelError
from config.settings import EmailConfig
from job_queue.producer import enqueue_notification_job
from models.schemas import CompletedEmailJob, EmailAttachment, ExecutionMode, NotificationJob

logger = structlog.get_logger()

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Addresses generated for guest checkouts; never deliverable
PLACEHOLDER_DOMAINS = frozenset({"guest.local", "guest.genfity.com", "noemail.local", "example.com", "example.org"})


def redact_email(email: str) -> str:
    """'jane@shop.com' → 'j***@shop.com'."""
    trimmed = (email or "").strip()
    at = trimmed.find("@")
    if at <= 1:
        return "***"
    return f"{trimmed[0]}***{trimmed[at:]}"


def should_send_customer_email(email: Optional[str]) -> bool:
    """Reject empty, malformed, and placeholder customer addresses."""
    if not email:
        return False
    email = email.strip().lower()
    if not _EMAIL_RE.match(email):
        return False
    local, _, domain = email.partition("@")
    if domain in PLACEHOLDER_DOMAINS:
        return False
    if local.startswith(("noreply", "no-reply", "guest+")):
        return False
    return True


class EmailChannel(ChannelAdapter):
    """
    SMTP email channel.

    `transport` defaults to aiosmtplib; tests pass an async callable taking
    the built EmailMessage. `queue` is only needed for ENQUEUE-mode sends.
    """

    channel_name = "email"

    def __init__(
        self,
        config: EmailConfig,
        queue=None,
        transport: Optional[Callable[[EmailMessage], Awaitable[Any]]] = None,
    ):
        super().__init__()
        self._config = config
        self._queue = queue
        self._transport = transport or self._smtp_send

    @property
    def configured(self) -> bool:
        return bool(self._config.smtp_host and self._config.from_email)

    @property
    def sender(self) -> str:
        return formataddr((self._config.from_name, self._config.from_email))

    # ── Send ──────────────────────────────────────────────────

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        from_address: Optional[str] = None,
        attachments: Optional[list[EmailAttachment]] = None,
        mode: ExecutionMode = ExecutionMode.DIRECT,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """Send (DIRECT) or enqueue (ENQUEUE) an email. Returns False on delivery failure."""
        if mode == ExecutionMode.ENQUEUE:
            return await self._enqueue_raw(to, subject, html, from_address, attachments, idempotency_key)

        message = self._build_message(to, subject, html, from_address, attachments or [])
        return await self._deliver(message)

    async def send_password_reset_link(self, to: str, reset_url: str, expires_at: datetime) -> bool:
        html = (
            f"<p>We received a request to reset your password.</p>"
            f"<p><a href=\"{reset_url}\">Reset password</a></p>"
            f"<p>This link expires at {expires_at.isoformat()}.</p>"
        )
        return await self.send_email(to, "Reset your password", html)

    async def send_password_reset_otp(
        self, to: str, name: str, code: str, expires_in_minutes: int, locale: str = "en",
    ) -> bool:
        subject = "Kode reset kata sandi" if locale == "id" else "Your password reset code"
        html = (
            f"<p>Hi {name or 'there'},</p>"
            f"<p>Your code is <strong>{code}</strong>. "
            f"It expires in {expires_in_minutes} minutes.</p>"
        )
        return await self.send_email(to, subject, html)

    async def send_order_completed(self, job: CompletedEmailJob, to: str) -> bool:
        total = f"{job.currency} {job.total_amount:,.2f}" if job.total_amount is not None else ""
        html = (
            f"<p>Hi {job.customer_name},</p>"
            f"<p>Your order <strong>{job.order_number}</strong> at {job.merchant_name} is completed.</p>"
            + (f"<p>Total: {total}</p>" if total else "")
        )
        return await self.send_email(to, f"Order {job.order_number} completed", html)

    # ── Internals ─────────────────────────────────────────────

    def _build_message(
        self,
        to: str,
        subject: str,
        html: str,
        from_address: Optional[str],
        attachments: list[EmailAttachment],
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = from_address or self.sender
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content("This message requires an HTML-capable email client.")
        message.add_alternative(html, subtype="html")

        for attachment in attachments:
            maintype, _, subtype = (attachment.content_type or "application/octet-stream").partition("/")
            message.add_attachment(
                base64.b64decode(attachment.content_base64),
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return message

    async def _deliver(self, message: EmailMessage) -> bool:
        if not self.configured:
            logger.error("email_not_configured", to=redact_email(message["To"]))
            return False
        try:
            await self._call(self._transport, message)
        except ChannelError:
            raise
        except Exception as e:
            logger.error("email_send_failed",
                         to=redact_email(message["To"]),
                         error=str(e))
            return False
        logger.info("email_sent", to=redact_email(message["To"]), subject=message["Subject"])
        return True

    async def _smtp_send(self, message: EmailMessage) -> Any:
        return await aiosmtplib.send(
            message,
            hostname=self._config.smtp_host,
            port=self._config.smtp_port,
            username=self._config.smtp_user or None,
            password=self._config.smtp_password or None,
            use_tls=self._config.use_tls,
            timeout=self._config.timeout_s,
        )

    async def _enqueue_raw(
        self,
        to: str,
        subject: str,
        html: str,
        from_address: Optional[str],
        attachments: Optional[list[EmailAttachment]],
        idempotency_key: Optional[str],
    ) -> bool:
        if self._queue is None:
            raise ChannelError("ENQUEUE mode requires a message queue", self.channel_name)

        payload: dict[str, Any] = {
            "idempotencyKey": idempotency_key or f"email_{uuid.uuid4().hex}",
            "to": to,
            "subject": subject,
            "html": html,
            "attachments": [a.model_dump(by_alias=True) for a in attachments or []],
        }
        if from_address:
            payload["from"] = from_address
        return await enqueue_notification_job(
            self._queue, NotificationJob(kind="email.raw", payload=payload),
        )
