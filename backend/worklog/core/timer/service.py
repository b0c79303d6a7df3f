import logging
import uuid
from datetime import datetime, timedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import (
    IncompleteSession, InvalidTransition, NotFound, SessionAlreadyActive, ValidationFailed,
)
from worklog.core.rbac.context import ActorContext
from worklog.core.timer.geolocation import GeolocationProvider, capture_location
from worklog.core.timer.models import ClockSession
from worklog.core.timer.schemas import ClockStart, ClockStop
from worklog.core.timesheets.models import TimesheetEntry, REMARK_REQUIRED_WORK_TYPES
from worklog.db.base import as_utc, utcnow
from worklog.settings import get_settings

logger = logging.getLogger(__name__)


def elapsed_seconds(session: ClockSession, now: datetime) -> int:
    """Wall-clock reconstruction: now - started - accumulated pauses - current pause."""
    end = as_utc(session.stopped_at) or now
    paused = session.accumulated_pause_seconds or 0
    if session.is_paused and session.paused_at and session.stopped_at is None:
        paused += (now - as_utc(session.paused_at)).total_seconds()
    return max(0, int((end - as_utc(session.started_at)).total_seconds() - paused))


def session_state(session: ClockSession | None) -> str:
    if session is None or session.stopped_at is not None:
        return "stopped"
    return "paused" if session.is_paused else "running"


async def get_open_session(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    owner_id: uuid.UUID,
    for_update: bool = False,
) -> ClockSession | None:
    q = select(ClockSession).where(
        ClockSession.tenant_id == tenant_id,
        ClockSession.owner_id == owner_id,
        ClockSession.stopped_at.is_(None),
    )
    if for_update:
        q = q.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def get_active_session(db: AsyncSession, ctx: ActorContext, now: datetime | None = None) -> dict:
    """Recovery after a restart: rehydrate the open session from storage."""
    now = now or utcnow()
    session = await get_open_session(db, ctx.tenant_id, ctx.user_id)
    if not session:
        return {"session": None, "state": "stopped", "elapsed_seconds": 0, "is_long_running": False}
    elapsed = elapsed_seconds(session, now)
    return {
        "session": session,
        "state": session_state(session),
        "elapsed_seconds": elapsed,
        "is_long_running": elapsed >= get_settings().LONG_RUNNING_SESSION_HOURS * 3600,
    }


async def _require_open(db: AsyncSession, ctx: ActorContext) -> ClockSession:
    session = await get_open_session(db, ctx.tenant_id, ctx.user_id, for_update=True)
    if not session:
        raise InvalidTransition("No timer is running", {"state": "stopped"})
    return session


async def start(
    db: AsyncSession,
    ctx: ActorContext,
    data: ClockStart,
    geolocation: GeolocationProvider | None = None,
    now: datetime | None = None,
) -> ClockSession:
    from worklog.core.enforcement.service import assert_not_blocked
    from worklog.core.locks.service import assert_can_mutate
    from worklog.core.projects.service import resolve_work_context
    from worklog.core.rbac.service import get_tenant_user

    if not data.project_id:
        raise ValidationFailed("Select a project before starting the timer", field="project_id")
    if not data.task_id:
        raise ValidationFailed("Select a task before starting the timer", field="task_id")

    now = now or utcnow()
    user = await get_tenant_user(db, ctx.tenant_id, ctx.user_id)
    if not user:
        raise NotFound("User", ctx.user_id)
    await assert_not_blocked(db, ctx.tenant_id, ctx.user_id)
    await assert_can_mutate(db, ctx, ctx.user_id)
    project, task, milestone = await resolve_work_context(
        db, ctx.tenant_id, data.project_id, data.task_id, data.milestone_id,
    )
    if data.work_type in REMARK_REQUIRED_WORK_TYPES and not (data.remark and data.remark.strip()):
        raise ValidationFailed(f"A remark is required for '{data.work_type}' work", field="remark")

    if await get_open_session(db, ctx.tenant_id, ctx.user_id):
        raise SessionAlreadyActive("A timer is already running; stop it before starting another")

    location = await capture_location(geolocation, data.location)
    session = ClockSession(
        tenant_id=ctx.tenant_id,
        owner_id=ctx.user_id,
        project_id=project.id,
        task_id=task.id,
        milestone_id=milestone.id if milestone else None,
        story_id=data.story_id,
        sprint_id=data.sprint_id,
        work_type=data.work_type,
        is_billable=data.is_billable,
        description=data.description,
        remark=data.remark,
        started_at=now,
        is_paused=False,
        accumulated_pause_seconds=0,
        start_location=location,
    )
    db.add(session)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race against another start for the same user
        raise SessionAlreadyActive("A timer is already running; stop it before starting another")

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timer.start", resource_type="clock_session", resource_id=str(session.id),
        detail={"project_id": str(project.id), "task_id": str(task.id), "has_location": location is not None},
    )
    await db.refresh(session)
    return session


async def pause(db: AsyncSession, ctx: ActorContext, now: datetime | None = None) -> ClockSession:
    session = await _require_open(db, ctx)
    if session.is_paused:
        raise InvalidTransition("Timer is already paused", {"state": "paused"})
    session.is_paused = True
    session.paused_at = now or utcnow()
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timer.pause", resource_type="clock_session", resource_id=str(session.id), detail={},
    )
    await db.refresh(session)
    return session


async def resume(db: AsyncSession, ctx: ActorContext, now: datetime | None = None) -> ClockSession:
    session = await _require_open(db, ctx)
    if not session.is_paused:
        raise InvalidTransition("Timer is not paused", {"state": "running"})
    now = now or utcnow()
    paused_for = max(0, int((now - as_utc(session.paused_at)).total_seconds()))
    session.accumulated_pause_seconds = (session.accumulated_pause_seconds or 0) + paused_for
    session.is_paused = False
    session.paused_at = None
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timer.resume", resource_type="clock_session", resource_id=str(session.id),
        detail={"paused_seconds": paused_for},
    )
    await db.refresh(session)
    return session


async def stop(
    db: AsyncSession,
    ctx: ActorContext,
    data: ClockStop,
    geolocation: GeolocationProvider | None = None,
    now: datetime | None = None,
) -> tuple[ClockSession, TimesheetEntry | None]:
    """
    Close the session and turn it into at most one draft entry.
    Entry insert, session link and close commit together or not at all.

    A run shorter than a minute closes with no entry. A project or milestone
    that settled while the timer ran does not keep the session open; the
    draft is recorded and its submission is refused later.
    """
    from worklog.core.errors import AuditLocked
    from worklog.core.locks.service import assert_can_mutate
    from worklog.core.tenants.service import get_tenant_tz
    from worklog.core.timesheets.service import record_entry

    session = await _require_open(db, ctx)
    if not session.project_id or not session.task_id:
        raise IncompleteSession(
            "Timer session has no project or task and cannot be converted to an entry",
            {"session_id": str(session.id)},
        )
    try:
        await assert_can_mutate(db, ctx, session.owner_id)
    except AuditLocked as exc:
        raise AuditLocked(exc.message, {
            **exc.details,
            "session_id": str(session.id),
            "next_step": "The timer keeps running; ask a tenant owner or admin to lift the audit lock, then stop it to log the time",
        }) from exc

    now = now or utcnow()
    started = as_utc(session.started_at)
    accumulated = session.accumulated_pause_seconds or 0
    if session.is_paused and session.paused_at:
        accumulated += max(0, int((now - as_utc(session.paused_at)).total_seconds()))
    worked_seconds = (now - started).total_seconds() - accumulated
    total_minutes = max(0, int(worked_seconds // 60))
    location = await capture_location(geolocation, data.location)

    entry = None
    if total_minutes >= 1:
        tz = await get_tenant_tz(db, ctx.tenant_id)
        entry = await record_entry(
            db, ctx,
            owner_id=session.owner_id,
            work_date=started.astimezone(tz).date(),
            project_id=session.project_id,
            task_id=session.task_id,
            milestone_id=session.milestone_id,
            story_id=session.story_id,
            sprint_id=session.sprint_id,
            duration_minutes=total_minutes,
            work_type=session.work_type,
            is_billable=session.is_billable,
            description=data.description or session.description,
            remark=data.remark or session.remark,
            entry_type="clock",
            start_time=started,
            end_time=now,
            location={"start": session.start_location, "stop": location} if (session.start_location or location) else None,
            allow_settled=True,
            now=now,
        )

    session.accumulated_pause_seconds = accumulated
    session.is_paused = False
    session.paused_at = None
    session.stopped_at = now
    session.stop_location = location
    session.total_minutes = total_minutes
    session.resulting_entry_id = entry.id if entry else None
    session.discard_reason = None if entry else "under_one_minute"
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timer.stop" if entry else "timer.discard",
        resource_type="clock_session", resource_id=str(session.id),
        detail={
            "entry_id": str(entry.id) if entry else None,
            "total_minutes": total_minutes,
            "paused_seconds": accumulated,
            "discard_reason": session.discard_reason,
        },
    )
    await db.refresh(session)
    if entry:
        logger.info("timer %s stopped after %d min", session.id, total_minutes)
    else:
        logger.info("timer %s closed under a minute; no entry", session.id)
    return session, entry


async def list_sessions(
    db: AsyncSession,
    ctx: ActorContext,
    since: datetime | None = None,
    limit: int = 50,
) -> list[ClockSession]:
    q = select(ClockSession).where(
        ClockSession.tenant_id == ctx.tenant_id,
        ClockSession.owner_id == ctx.user_id,
    )
    if since:
        q = q.where(ClockSession.started_at >= since)
    result = await db.execute(q.order_by(ClockSession.started_at.desc()).limit(limit))
    return list(result.scalars().all())


async def list_long_running_sessions(db: AsyncSession, ctx: ActorContext, now: datetime | None = None) -> list[ClockSession]:
    """Open sessions older than LONG_RUNNING_SESSION_HOURS, for reviewers to chase up."""
    from worklog.core.errors import NotAuthorized
    if not ctx.is_reviewer:
        raise NotAuthorized("Only reviewers can list other users' timers")
    cutoff = (now or utcnow()) - timedelta(hours=get_settings().LONG_RUNNING_SESSION_HOURS)
    result = await db.execute(
        select(ClockSession)
        .where(
            ClockSession.tenant_id == ctx.tenant_id,
            ClockSession.stopped_at.is_(None),
            ClockSession.started_at <= cutoff,
        )
        .order_by(ClockSession.started_at)
    )
    return list(result.scalars().all())
