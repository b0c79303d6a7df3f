from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.enforcement.service import refresh_user_committed
from worklog.core.rbac.context import ActorContext
from worklog.core.timer import service
from worklog.core.timer.geolocation import GeolocationProvider, default_geolocation
from worklog.core.timer.schemas import (
    ClockStart, ClockStop, ClockSessionRead, ActiveSessionRead, ClockStopResult,
)
from worklog.dependencies import get_db, get_current_user, get_session_factory
from worklog.settings import get_settings

router = APIRouter(prefix="/timer", tags=["timer"])


def get_geolocation() -> GeolocationProvider:
    return default_geolocation()


@router.post("/start", response_model=ClockSessionRead, status_code=201)
async def start_timer(
    data: ClockStart,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
    geolocation: GeolocationProvider = Depends(get_geolocation),
    session_factory=Depends(get_session_factory),
):
    if get_settings().ENFORCEMENT_CHECK_ON_ACCESS:
        await refresh_user_committed(session_factory, ctx.tenant_id, ctx.user_id)
    return await service.start(db, ctx, data, geolocation)


@router.post("/pause", response_model=ClockSessionRead)
async def pause_timer(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.pause(db, ctx)


@router.post("/resume", response_model=ClockSessionRead)
async def resume_timer(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.resume(db, ctx)


@router.post("/stop", response_model=ClockStopResult)
async def stop_timer(
    data: ClockStop,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
    geolocation: GeolocationProvider = Depends(get_geolocation),
):
    session, entry = await service.stop(db, ctx, data, geolocation)
    return {"session": session, "entry": entry}


@router.get("/active", response_model=ActiveSessionRead)
async def active_timer(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.get_active_session(db, ctx)


@router.get("/sessions", response_model=list[ClockSessionRead])
async def list_sessions(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_sessions(db, ctx)


@router.get("/long-running", response_model=list[ClockSessionRead])
async def list_long_running(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_long_running_sessions(db, ctx)
