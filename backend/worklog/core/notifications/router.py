import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.notifications import service
from worklog.core.notifications.schemas import NotificationRead, OutboxMessageRead, MarkAllReadResult
from worklog.core.rbac.context import ActorContext
from worklog.dependencies import get_db, get_current_user, require_admin

router = APIRouter(tags=["notifications"])


@router.get("/notifications", response_model=list[NotificationRead])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_notifications(db, ctx, unread_only=unread_only, limit=limit)


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.mark_read(db, ctx, notification_id)


@router.post("/notifications/read-all", response_model=MarkAllReadResult)
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return {"updated": await service.mark_all_read(db, ctx)}


@router.get("/outbox", response_model=list[OutboxMessageRead])
async def list_outbox(
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_admin),
):
    return await service.list_outbox(db, ctx, status=status)
