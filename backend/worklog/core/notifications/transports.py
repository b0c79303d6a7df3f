"""
Delivery collaborators used by the outbox dispatcher.

Each is a Protocol so deployments can plug in their own transport; the
defaults write in-app notifications, send e-mail over SMTP (or log it when
no server is configured), and POST billable entries to an HTTP endpoint.
"""
import logging
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Protocol

import aiosmtplib
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.notifications.models import Notification
from worklog.settings import get_settings

logger = logging.getLogger(__name__)


class NotificationDispatch(Protocol):
    async def notify(
        self,
        db: AsyncSession,
        *,
        tenant_id: uuid.UUID,
        recipient_id: uuid.UUID,
        kind: str,
        payload: dict[str, Any],
    ) -> None:
        ...


class EmailSender(Protocol):
    async def send(self, *, to_email: str, template: str, payload: dict[str, Any]) -> None:
        ...


class BillingSync(Protocol):
    async def sync_billable(self, entry_id: uuid.UUID, payload: dict[str, Any]) -> None:
        ...


# ── Defaults ──────────────────────────────────────────────────────────────────

class InAppNotificationDispatch:
    async def notify(
        self,
        db: AsyncSession,
        *,
        tenant_id: uuid.UUID,
        recipient_id: uuid.UUID,
        kind: str,
        payload: dict[str, Any],
    ) -> None:
        db.add(Notification(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            kind=kind,
            category=payload.get("category", "general"),
            title=payload.get("title") or kind.replace("_", " ").capitalize(),
            message=payload.get("message"),
            entity_type=payload.get("entity_type"),
            entity_id=payload.get("entity_id"),
            payload=payload,
        ))
        await db.flush()


class LoggingEmailSender:
    """Used when no SMTP server is configured."""

    async def send(self, *, to_email: str, template: str, payload: dict[str, Any]) -> None:
        logger.info("email %s -> %s (SMTP not configured)", template, to_email, extra={"email_template": template})


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: str | None = None,
        password: str | None = None,
        start_tls: bool = True,
        from_email: str = "noreply@worklog.local",
        from_name: str = "Worklog",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username or None
        self.password = password or None
        self.start_tls = start_tls
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def build_message(self, to_email: str, template: str, payload: dict[str, Any]) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message["Subject"] = email_subject(template, payload)
        message.attach(MIMEText(email_body(template, payload), "plain"))
        return message

    async def send(self, *, to_email: str, template: str, payload: dict[str, Any]) -> None:
        # Errors propagate so the outbox retries the message
        await aiosmtplib.send(
            self.build_message(to_email, template, payload),
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            start_tls=self.start_tls,
            timeout=self.timeout,
        )
        logger.info("email %s sent to %s", template, to_email, extra={"email_template": template})


def email_subject(template: str, payload: dict[str, Any]) -> str:
    subject = payload.get("title") or template.replace("_", " ").capitalize()
    if payload.get("work_date"):
        subject = f"{subject} ({payload['work_date']})"
    return subject


def email_body(template: str, payload: dict[str, Any]) -> str:
    lines = [payload.get("message") or email_subject(template, payload)]
    for label, key in (
        ("Date", "work_date"),
        ("Minutes", "duration_minutes"),
        ("Status", "status"),
        ("Reason", "rejection_reason"),
        ("Comment", "comment"),
    ):
        if payload.get(key) not in (None, ""):
            lines.append(f"{label}: {payload[key]}")
    return "\n".join(lines)


class HttpBillingSync:
    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def sync_billable(self, entry_id: uuid.UUID, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json={"entry_id": str(entry_id), **payload})
            response.raise_for_status()


class NullBillingSync:
    async def sync_billable(self, entry_id: uuid.UUID, payload: dict[str, Any]) -> None:
        logger.info("billing sync not configured; skipping entry %s", entry_id)


def default_email_sender() -> EmailSender:
    settings = get_settings()
    if settings.SMTP_HOST:
        return SmtpEmailSender(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            start_tls=settings.SMTP_START_TLS,
            from_email=settings.EMAIL_FROM,
            from_name=settings.EMAIL_FROM_NAME,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )
    return LoggingEmailSender()


def default_billing_sync() -> BillingSync:
    settings = get_settings()
    if settings.BILLING_SYNC_URL:
        return HttpBillingSync(settings.BILLING_SYNC_URL, settings.BILLING_SYNC_TIMEOUT_SECONDS)
    return NullBillingSync()
