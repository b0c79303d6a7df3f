import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.enforcement import service
from worklog.core.enforcement.schemas import (
    AlarmRead, AppealRequest, ResolveRequest, GateStatusRead, SweepResult, AlarmStatusFilter,
)
from worklog.core.rbac.context import ActorContext
from worklog.dependencies import get_db, get_current_user, require_admin

router = APIRouter(prefix="/enforcement", tags=["enforcement"])


@router.get("/gate", response_model=GateStatusRead)
async def gate_status(
    user_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.gate_status(db, ctx, user_id)


@router.get("/alarms", response_model=list[AlarmRead])
async def list_alarms(
    user_id: uuid.UUID | None = Query(None),
    status: AlarmStatusFilter | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_alarms_for_user(db, ctx, user_id, status)


@router.get("/alarms/review", response_model=list[AlarmRead])
async def list_alarms_for_review(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_alarms_for_review(db, ctx)


@router.post("/alarms/{alarm_id}/appeal", response_model=AlarmRead)
async def appeal_alarm(
    alarm_id: uuid.UUID,
    body: AppealRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.appeal(db, ctx, alarm_id, body.reason)


@router.post("/alarms/{alarm_id}/resolve", response_model=AlarmRead)
async def resolve_alarm(
    alarm_id: uuid.UUID,
    body: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.resolve(db, ctx, alarm_id, body.approve, body.note)


@router.post("/sweep", response_model=SweepResult)
async def sweep_tenant(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_admin),
):
    return {"raised": await service.sweep_tenant(db, ctx.tenant_id)}
