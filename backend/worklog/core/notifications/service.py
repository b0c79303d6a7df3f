import uuid
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import NotFound
from worklog.core.notifications.models import Notification, OutboxMessage
from worklog.core.rbac.context import ActorContext


async def list_notifications(
    db: AsyncSession,
    ctx: ActorContext,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    q = select(Notification).where(
        Notification.tenant_id == ctx.tenant_id,
        Notification.recipient_id == ctx.user_id,
        Notification.category != "alarm",
    )
    if unread_only:
        q = q.where(Notification.is_read == False)
    q = q.order_by(Notification.created_at.desc()).limit(limit)
    result = await db.execute(q)
    return list(result.scalars().all())


async def mark_read(db: AsyncSession, ctx: ActorContext, notification_id: uuid.UUID) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.tenant_id == ctx.tenant_id,
            Notification.recipient_id == ctx.user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFound("Notification", notification_id)
    if not notification.is_read:
        notification.is_read = True
        await db.flush()
    return notification


async def mark_all_read(db: AsyncSession, ctx: ActorContext) -> int:
    result = await db.execute(
        update(Notification)
        .where(
            Notification.tenant_id == ctx.tenant_id,
            Notification.recipient_id == ctx.user_id,
            Notification.category != "alarm",
            Notification.is_read == False,
        )
        .values(is_read=True)
    )
    return result.rowcount


async def list_outbox(
    db: AsyncSession,
    ctx: ActorContext,
    *,
    status: str | None = None,
    limit: int = 100,
) -> list[OutboxMessage]:
    q = select(OutboxMessage).where(OutboxMessage.tenant_id == ctx.tenant_id)
    if status:
        q = q.where(OutboxMessage.status == status)
    q = q.order_by(OutboxMessage.created_at.desc()).limit(limit)
    result = await db.execute(q)
    return list(result.scalars().all())
