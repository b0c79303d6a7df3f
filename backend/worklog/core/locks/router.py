import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.locks import service
from worklog.core.locks.schemas import LockRequest, BulkLockRequest, LockStateRead
from worklog.core.rbac.context import ActorContext
from worklog.dependencies import get_db, get_current_user, require_admin

router = APIRouter(prefix="/audit-locks", tags=["audit locks"])


@router.get("", response_model=list[LockStateRead])
async def list_locked_users(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_locked_users(db, ctx)


@router.put("/{user_id}", response_model=LockStateRead)
async def set_lock(
    user_id: uuid.UUID,
    body: LockRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_admin),
):
    users = await service.set_timesheet_lock(db, ctx, [user_id], body.locked)
    return users[0]


@router.post("/bulk", response_model=list[LockStateRead])
async def set_lock_bulk(
    body: BulkLockRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_admin),
):
    return await service.set_timesheet_lock(db, ctx, body.user_ids, body.locked)
