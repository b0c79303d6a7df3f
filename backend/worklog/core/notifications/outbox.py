"""
Transactional outbox.

enqueue() writes side effects in the caller's transaction, so a rolled-back
transition never notifies anyone. OutboxDispatcher delivers them later, each
message in its own transaction; a failed delivery is logged and retried on a
later drain and never reaches back into the business operation.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.notifications.models import OutboxMessage
from worklog.core.notifications.transports import (
    BillingSync, EmailSender, NotificationDispatch,
    InAppNotificationDispatch, default_billing_sync, default_email_sender,
)
from worklog.db.base import utcnow
from worklog.settings import get_settings

logger = logging.getLogger(__name__)

CHANNELS = ("notify", "email", "billing")


async def enqueue(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    channel: str,
    kind: str,
    payload: dict[str, Any],
    recipient_id: uuid.UUID | None = None,
) -> OutboxMessage:
    if channel not in CHANNELS:
        raise ValueError(f"Unknown outbox channel '{channel}'")
    message = OutboxMessage(
        tenant_id=tenant_id,
        channel=channel,
        recipient_id=recipient_id,
        kind=kind,
        payload=payload,
        status="pending",
        attempts=0,
        available_at=utcnow(),
    )
    db.add(message)
    return message


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        notifier: NotificationDispatch | None = None,
        email: EmailSender | None = None,
        billing: BillingSync | None = None,
        max_attempts: int | None = None,
        batch_size: int | None = None,
        retry_delay: timedelta = timedelta(seconds=60),
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.notifier = notifier or InAppNotificationDispatch()
        self.email = email or default_email_sender()
        self.billing = billing or default_billing_sync()
        self.max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS
        self.batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self.retry_delay = retry_delay

    async def drain(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        counts = {"sent": 0, "retry": 0, "failed": 0}
        for message_id in await self._pending_ids(now):
            outcome = await self._deliver_one(message_id, now)
            if outcome:
                counts[outcome] += 1
        if any(counts.values()):
            logger.info("outbox drained", extra=counts)
        return counts

    async def _pending_ids(self, now: datetime) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(OutboxMessage.id)
                .where(OutboxMessage.status == "pending", OutboxMessage.available_at <= now)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _deliver_one(self, message_id: uuid.UUID, now: datetime) -> str | None:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    message = await db.get(OutboxMessage, message_id, with_for_update=True)
                    if not message or message.status != "pending":
                        return None
                    await self._deliver(db, message)
                    message.status = "sent"
                    message.sent_at = now
                    message.attempts += 1
            return "sent"
        except Exception as exc:
            logger.warning(
                "outbox delivery failed for %s", message_id,
                exc_info=True, extra={"outbox_id": str(message_id)},
            )
            return await self._record_failure(message_id, exc, now)

    async def _deliver(self, db: AsyncSession, message: OutboxMessage) -> None:
        if message.channel == "notify":
            await self.notifier.notify(
                db,
                tenant_id=message.tenant_id,
                recipient_id=message.recipient_id,
                kind=message.kind,
                payload=message.payload,
            )
        elif message.channel == "email":
            await self.email.send(
                to_email=await self._recipient_email(db, message),
                template=message.kind,
                payload=message.payload,
            )
        elif message.channel == "billing":
            await self.billing.sync_billable(uuid.UUID(message.payload["entry_id"]), message.payload)
        else:
            raise ValueError(f"Unknown outbox channel '{message.channel}'")

    async def _recipient_email(self, db: AsyncSession, message: OutboxMessage) -> str:
        from worklog.core.rbac.service import get_tenant_user
        user = await get_tenant_user(db, message.tenant_id, message.recipient_id) if message.recipient_id else None
        if not user or not user.email:
            raise ValueError(f"No e-mail address for recipient {message.recipient_id}")
        return user.email

    async def _record_failure(self, message_id: uuid.UUID, exc: Exception, now: datetime) -> str:
        async with self.session_factory() as db:
            async with db.begin():
                message = await db.get(OutboxMessage, message_id, with_for_update=True)
                message.attempts += 1
                message.last_error = f"{type(exc).__name__}: {exc}"[:2000]
                if message.attempts >= self.max_attempts:
                    message.status = "failed"
                    logger.error("outbox message %s gave up after %d attempts", message_id, message.attempts)
                    return "failed"
                message.available_at = now + self.retry_delay * message.attempts
                return "retry"


async def run_dispatcher(dispatcher: OutboxDispatcher, interval_seconds: float) -> None:
    """Background loop started from the app lifespan."""
    while True:
        try:
            await dispatcher.drain()
        except Exception:
            logger.exception("outbox drain crashed")
        await asyncio.sleep(interval_seconds)
