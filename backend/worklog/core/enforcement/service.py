import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import (
    AlarmAlreadyResolved, BlockedByAlarm, InvalidTransition, NotAuthorized, NotFound, ValidationFailed,
)
from worklog.core.notifications.models import (
    Notification, ACTIVE_ALARM_STATUSES, GAP_ALARM_KINDS,
    ALARM_OPEN, ALARM_APPEALED, ALARM_RESOLVED,
)
from worklog.core.rbac.context import ActorContext
from worklog.core.rbac.models import User
from worklog.db.base import utcnow
from worklog.settings import get_settings

logger = logging.getLogger(__name__)

SEVERITY = {
    "missing-entry": "high",
    "incomplete-day": "medium",
    "task-delay": "medium",
    "lockout": "critical",
}


# ── Queries ───────────────────────────────────────────────────────────────────

def _alarms(tenant_id: uuid.UUID):
    return select(Notification).where(
        Notification.tenant_id == tenant_id,
        Notification.category == "alarm",
    )


async def active_alarms(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID) -> list[Notification]:
    result = await db.execute(
        _alarms(tenant_id)
        .where(Notification.recipient_id == user_id, Notification.status.in_(ACTIVE_ALARM_STATUSES))
        .order_by(Notification.alarm_date, Notification.created_at)
    )
    return list(result.scalars().all())


async def has_active_alarm(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Notification.id).where(
            Notification.tenant_id == tenant_id,
            Notification.category == "alarm",
            Notification.recipient_id == user_id,
            Notification.status.in_(ACTIVE_ALARM_STATUSES),
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _get_alarm_locked(db: AsyncSession, tenant_id: uuid.UUID, alarm_id: uuid.UUID) -> Notification:
    result = await db.execute(
        _alarms(tenant_id)
        .where(Notification.id == alarm_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    alarm = result.scalar_one_or_none()
    if not alarm:
        raise NotFound("Alarm", alarm_id)
    return alarm


async def list_alarms_for_user(
    db: AsyncSession,
    ctx: ActorContext,
    user_id: uuid.UUID | None = None,
    status: str | None = None,
) -> list[Notification]:
    from worklog.core.rbac.service import can_review_user
    user_id = user_id or ctx.user_id
    if user_id != ctx.user_id and not await can_review_user(db, ctx, user_id):
        raise NotAuthorized("You cannot view this user's alarms")
    q = _alarms(ctx.tenant_id).where(Notification.recipient_id == user_id)
    if status:
        q = q.where(Notification.status == status)
    result = await db.execute(q.order_by(Notification.created_at.desc()))
    return list(result.scalars().all())


async def list_alarms_for_review(db: AsyncSession, ctx: ActorContext) -> list[Notification]:
    """Appealed and open alarms the reviewer can act on, appeals first."""
    from worklog.core.rbac.models import ProjectMember
    if not ctx.is_reviewer:
        raise NotAuthorized("Only project managers and admins review alarms")
    q = _alarms(ctx.tenant_id).where(
        Notification.status.in_(ACTIVE_ALARM_STATUSES),
        Notification.recipient_id != ctx.user_id,
    )
    if not ctx.is_admin:
        members = (
            select(ProjectMember.user_id)
            .where(
                ProjectMember.tenant_id == ctx.tenant_id,
                ProjectMember.project_id.in_(ctx.managed_project_ids),
            )
            .scalar_subquery()
        )
        q = q.where(Notification.recipient_id.in_(members))
    appeals_first = case((Notification.status == ALARM_APPEALED, 0), else_=1)
    result = await db.execute(q.order_by(appeals_first, Notification.created_at))
    return list(result.scalars().all())


# ── Gating ────────────────────────────────────────────────────────────────────

def _next_step(alarm: Notification) -> str:
    if alarm.status == ALARM_APPEALED:
        return "Wait for a reviewer to decide on your appeal"
    if alarm.alarm_kind in GAP_ALARM_KINDS and alarm.alarm_date:
        return f"Submit the missing hours for {alarm.alarm_date.isoformat()} or appeal the alarm"
    if alarm.alarm_kind == "task-delay":
        return "Update the overdue task or appeal the alarm"
    return "Appeal the lockout; a reviewer must resolve it"


def describe_alarm(alarm: Notification) -> dict[str, Any]:
    return {
        "alarm_id": str(alarm.id),
        "kind": alarm.alarm_kind,
        "status": alarm.status,
        "severity": alarm.severity,
        "alarm_date": alarm.alarm_date.isoformat() if alarm.alarm_date else None,
        "title": alarm.title,
        "next_step": _next_step(alarm),
    }


async def assert_not_blocked(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID) -> None:
    alarms = await active_alarms(db, tenant_id, user_id)
    if alarms:
        raise BlockedByAlarm(
            f"Timer is blocked by {len(alarms)} open alarm{'s' if len(alarms) != 1 else ''}",
            {"alarms": [describe_alarm(a) for a in alarms], "next_step": _next_step(alarms[0])},
        )


async def gate_status(
    db: AsyncSession,
    ctx: ActorContext,
    user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    from worklog.core.rbac.service import can_review_user, get_tenant_user
    user_id = user_id or ctx.user_id
    if user_id != ctx.user_id and not await can_review_user(db, ctx, user_id):
        raise NotAuthorized("You cannot view this user's alarms")
    user = await get_tenant_user(db, ctx.tenant_id, user_id)
    if not user:
        raise NotFound("User", user_id)
    if get_settings().ENFORCEMENT_CHECK_ON_ACCESS:
        await refresh_user(db, ctx.tenant_id, user, now=now)
    alarms = await active_alarms(db, ctx.tenant_id, user_id)
    return {
        "user_id": user_id,
        "timer_blocked": bool(alarms),
        "is_timesheet_locked": user.is_timesheet_locked,
        "violation_count": user.violation_count,
        "alarms": [describe_alarm(a) for a in alarms],
    }


# ── Detection ─────────────────────────────────────────────────────────────────

def candidate_days(today: date, since: date | None = None) -> list[date]:
    """Working days of the current month strictly before today, newest first."""
    settings = get_settings()
    start = today.replace(day=1)
    if since and since > start:
        start = since
    days = []
    day = today - timedelta(days=1)
    while day >= start:
        if day.weekday() in settings.WORKING_WEEKDAYS:
            days.append(day)
        day -= timedelta(days=1)
    return days


def _gap_key(user_id: uuid.UUID, day: date) -> str:
    return f"gap:{user_id}:{day.isoformat()}"


async def _raise_alarm(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    kind: str,
    title: str,
    message: str,
    dedupe_key: str,
    alarm_date: date | None = None,
    payload: dict[str, Any] | None = None,
) -> Notification:
    alarm = Notification(
        tenant_id=tenant_id,
        recipient_id=user_id,
        kind=f"timesheet_{kind.replace('-', '_')}_alarm",
        category="alarm",
        title=title,
        message=message,
        entity_type="user",
        entity_id=str(user_id),
        payload=payload,
        alarm_kind=kind,
        severity=SEVERITY[kind],
        alarm_date=alarm_date,
        dedupe_key=dedupe_key,
        status=ALARM_OPEN,
    )
    db.add(alarm)
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=tenant_id, user_id=None,
        action="alarm.raise", resource_type="alarm", resource_id=str(alarm.id),
        detail={"user_id": str(user_id), "kind": kind, "date": str(alarm_date) if alarm_date else None},
    )
    logger.info("raised %s alarm for user %s", kind, user_id, extra={"alarm_kind": kind})
    return alarm


async def _existing_keys(db: AsyncSession, tenant_id: uuid.UUID, keys: list[str]) -> set[str]:
    if not keys:
        return set()
    result = await db.execute(
        select(Notification.dedupe_key).where(
            Notification.tenant_id == tenant_id,
            Notification.dedupe_key.in_(keys),
        )
    )
    return set(result.scalars().all())


async def _latest_gap_alarm_date(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID, since: date) -> date | None:
    result = await db.execute(
        select(Notification.alarm_date)
        .where(
            Notification.tenant_id == tenant_id,
            Notification.category == "alarm",
            Notification.recipient_id == user_id,
            Notification.alarm_kind.in_(GAP_ALARM_KINDS),
            Notification.alarm_date >= since,
        )
        .order_by(Notification.alarm_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _detect_gap(db: AsyncSession, tenant_id: uuid.UUID, user: User, today: date) -> Notification | None:
    """
    Most recent deficient working day this month with no alarm yet.
    Days at or before an already alarmed day are never backfilled, so a
    second run over the same data raises nothing.
    """
    from worklog.core.timesheets.service import day_totals
    settings = get_settings()
    joined = user.created_at.date() if user.created_at else None
    days = candidate_days(today, since=joined)
    if not days:
        return None

    latest_alarmed = await _latest_gap_alarm_date(db, tenant_id, user.id, days[-1])
    totals = await day_totals(db, tenant_id, user.id, days[-1], days[0])
    for day in days:
        if latest_alarmed and day <= latest_alarmed:
            return None
        minutes = totals.get(day, 0)
        if minutes >= settings.DAILY_TARGET_MINUTES:
            continue
        if await _existing_keys(db, tenant_id, [_gap_key(user.id, day)]):
            return None
        kind = "missing-entry" if minutes == 0 else "incomplete-day"
        if kind == "missing-entry":
            title = f"Missing timesheet for {day.isoformat()}"
            message = "No time was logged for this working day"
        else:
            title = f"Incomplete timesheet for {day.isoformat()}"
            message = f"Only {minutes} of {settings.DAILY_TARGET_MINUTES} minutes were logged"
        return await _raise_alarm(
            db, tenant_id, user.id,
            kind=kind, title=title, message=message,
            dedupe_key=_gap_key(user.id, day), alarm_date=day,
            payload={"logged_minutes": minutes, "target_minutes": settings.DAILY_TARGET_MINUTES},
        )
    return None


async def _escalate(db: AsyncSession, tenant_id: uuid.UUID, user: User, today: date) -> Notification | None:
    """Count the new violation; promote to a lockout at the threshold."""
    from worklog.core.notifications import fanout
    from worklog.core.rbac.service import manager_ids_for_user, tenant_owner_ids
    settings = get_settings()

    user.violation_count = User.violation_count + 1
    await db.flush()
    await db.refresh(user, attribute_names=["violation_count"])
    if user.violation_count < settings.LOCKOUT_THRESHOLD:
        return None

    existing = await db.execute(
        _alarms(tenant_id).where(
            Notification.recipient_id == user.id,
            Notification.alarm_kind == "lockout",
            Notification.status.in_(ACTIVE_ALARM_STATUSES),
        ).limit(1)
    )
    if existing.scalar_one_or_none():
        return None
    key = f"lockout:{user.id}:{today.isoformat()}"
    if await _existing_keys(db, tenant_id, [key]):
        return None

    alarm = await _raise_alarm(
        db, tenant_id, user.id,
        kind="lockout",
        title="Timer locked: repeated timesheet alarms",
        message=f"{user.violation_count} timesheet alarms were raised without the hours being logged",
        dedupe_key=key, alarm_date=today,
        payload={"violation_count": user.violation_count, "threshold": settings.LOCKOUT_THRESHOLD},
    )
    managers = await manager_ids_for_user(db, tenant_id, user.id) + await tenant_owner_ids(db, tenant_id)
    await fanout.lockout_raised(db, alarm, managers)
    return alarm


async def _detect_task_delays(db: AsyncSession, tenant_id: uuid.UUID, user: User, today: date) -> list[Notification]:
    from worklog.core.projects.service import list_overdue_tasks
    tasks = await list_overdue_tasks(db, tenant_id, user.id, today)
    keys = {t.id: f"task-delay:{t.id}" for t in tasks}
    seen = await _existing_keys(db, tenant_id, list(keys.values()))
    raised = []
    for task in tasks:
        if keys[task.id] in seen:
            continue
        raised.append(await _raise_alarm(
            db, tenant_id, user.id,
            kind="task-delay",
            title=f"Task overdue: {task.title}",
            message=f"Due {task.due_date.isoformat()}",
            dedupe_key=keys[task.id], alarm_date=task.due_date,
            payload={"task_id": str(task.id), "project_id": str(task.project_id)},
        ))
    return raised


async def evaluate_user(db: AsyncSession, tenant_id: uuid.UUID, user: User, today: date) -> list[Notification]:
    """Run every detector for one user. Same inputs, same alarms: safe to repeat."""
    if user.role != "member" or user.is_superadmin or user.status != "active":
        return []
    result = await db.execute(
        select(User).where(User.id == user.id).with_for_update()
    )
    user = result.scalar_one()

    raised: list[Notification] = []
    gap = await _detect_gap(db, tenant_id, user, today)
    if gap:
        raised.append(gap)
        lockout = await _escalate(db, tenant_id, user, today)
        if lockout:
            raised.append(lockout)
    raised.extend(await _detect_task_delays(db, tenant_id, user, today))
    return raised


async def refresh_user(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    user: User,
    now: datetime | None = None,
) -> list[Notification]:
    """On-access detection for one user in the tenant's local day."""
    from worklog.core.tenants.service import tenant_today
    today = await tenant_today(db, tenant_id, now)
    return await evaluate_user(db, tenant_id, user, today)


async def sweep_tenant(db: AsyncSession, tenant_id: uuid.UUID, now: datetime | None = None) -> int:
    from worklog.core.rbac.service import list_enforcement_subjects
    from worklog.core.tenants.service import tenant_today
    today = await tenant_today(db, tenant_id, now)
    raised = 0
    for user in await list_enforcement_subjects(db, tenant_id):
        raised += len(await evaluate_user(db, tenant_id, user, today))
    return raised


async def sweep(session_factory: Callable[[], AsyncSession], now: datetime | None = None) -> int:
    """One pass over every active tenant, each in its own transaction."""
    from worklog.core.tenants.service import list_active_tenants
    async with session_factory() as db:
        tenant_ids = [t.id for t in await list_active_tenants(db)]
    raised = 0
    for tenant_id in tenant_ids:
        try:
            async with session_factory() as db:
                async with db.begin():
                    raised += await sweep_tenant(db, tenant_id, now)
        except Exception:
            logger.exception("enforcement sweep failed for tenant %s", tenant_id)
    if raised:
        logger.info("enforcement sweep raised %d alarms", raised)
    return raised


async def run_sweeper(session_factory: Callable[[], AsyncSession], interval_seconds: float) -> None:
    while True:
        try:
            await sweep(session_factory)
        except Exception:
            logger.exception("enforcement sweep crashed")
        await asyncio.sleep(interval_seconds)


# ── Clearing ──────────────────────────────────────────────────────────────────

async def clear_gaps_for_day(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    owner_id: uuid.UUID,
    work_date: date,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> int:
    """Resolve a day's gap alarms once its logged minutes reach the target."""
    from worklog.core.timesheets.service import day_totals
    totals = await day_totals(db, tenant_id, owner_id, work_date, work_date)
    if totals.get(work_date, 0) < get_settings().DAILY_TARGET_MINUTES:
        return 0
    result = await db.execute(
        update(Notification)
        .where(
            Notification.tenant_id == tenant_id,
            Notification.category == "alarm",
            Notification.recipient_id == owner_id,
            Notification.alarm_kind.in_(GAP_ALARM_KINDS),
            Notification.alarm_date == work_date,
            Notification.status.in_(ACTIVE_ALARM_STATUSES),
        )
        .values(
            status=ALARM_RESOLVED,
            resolved_by=actor_id,
            resolved_at=now or utcnow(),
            resolution_note="Cleared by logged time",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        from worklog.core.audit.service import audit
        await audit(db, tenant_id=tenant_id, user_id=actor_id,
            action="alarm.clear", resource_type="user", resource_id=str(owner_id),
            detail={"date": str(work_date), "cleared": result.rowcount},
        )
    return result.rowcount


# ── Appeal and resolution ─────────────────────────────────────────────────────

async def _set_alarm_status(
    db: AsyncSession,
    alarm: Notification,
    expected: tuple[str, ...],
    values: dict,
) -> None:
    result = await db.execute(
        update(Notification)
        .where(Notification.id == alarm.id, Notification.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(
            "Alarm was changed by someone else; re-fetch it and try again",
            {"alarm_id": str(alarm.id)},
        )


async def appeal(
    db: AsyncSession,
    ctx: ActorContext,
    alarm_id: uuid.UUID,
    reason: str,
    now: datetime | None = None,
) -> Notification:
    from worklog.core.notifications import fanout
    from worklog.core.rbac.service import manager_ids_for_user, tenant_owner_ids

    if not reason or not reason.strip():
        raise ValidationFailed("An appeal reason is required", field="reason")
    alarm = await _get_alarm_locked(db, ctx.tenant_id, alarm_id)
    if alarm.recipient_id != ctx.user_id:
        raise NotAuthorized("Only the alarmed user can appeal")
    if not ctx.is_member:
        raise NotAuthorized("Only individual contributors can appeal alarms")
    if alarm.status == ALARM_RESOLVED:
        raise AlarmAlreadyResolved("Alarm is already resolved", {"alarm_id": str(alarm.id)})
    if alarm.status == ALARM_APPEALED:
        raise InvalidTransition("Alarm already has a pending appeal", {"alarm_id": str(alarm.id)})

    await _set_alarm_status(db, alarm, (ALARM_OPEN,), {
        "status": ALARM_APPEALED,
        "appeal_reason": reason.strip(),
        "appealed_at": now or utcnow(),
    })
    await db.refresh(alarm)

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="alarm.appeal", resource_type="alarm", resource_id=str(alarm.id),
        detail={"reason": alarm.appeal_reason},
    )
    reviewers = await manager_ids_for_user(db, ctx.tenant_id, ctx.user_id) + await tenant_owner_ids(db, ctx.tenant_id)
    await fanout.alarm_appealed(db, alarm, reviewers)
    return alarm


async def resolve(
    db: AsyncSession,
    ctx: ActorContext,
    alarm_id: uuid.UUID,
    approve: bool,
    note: str | None = None,
    now: datetime | None = None,
) -> Notification:
    """
    Reviewer decision. Approve: OPEN|APPEALED -> RESOLVED. Reject: APPEALED -> OPEN.
    Resolving a lockout resets the user's violation counter in the same
    transaction as the status flip.
    """
    from worklog.core.notifications import fanout
    from worklog.core.rbac.service import can_review_user

    alarm = await _get_alarm_locked(db, ctx.tenant_id, alarm_id)
    if alarm.recipient_id == ctx.user_id or not await can_review_user(db, ctx, alarm.recipient_id):
        raise NotAuthorized("You cannot review this alarm")
    if alarm.status == ALARM_RESOLVED:
        raise AlarmAlreadyResolved("Alarm is already resolved", {"alarm_id": str(alarm.id)})

    if approve:
        await _set_alarm_status(db, alarm, ACTIVE_ALARM_STATUSES, {
            "status": ALARM_RESOLVED,
            "resolved_by": ctx.user_id,
            "resolved_at": now or utcnow(),
            "resolution_note": note,
        })
        if alarm.alarm_kind == "lockout":
            await db.execute(
                update(User)
                .where(User.id == alarm.recipient_id, User.tenant_id == ctx.tenant_id)
                .values(violation_count=0)
                .execution_options(synchronize_session=False)
            )
    else:
        if alarm.status != ALARM_APPEALED:
            raise InvalidTransition("Only an appealed alarm can have its appeal rejected", {"alarm_id": str(alarm.id)})
        await _set_alarm_status(db, alarm, (ALARM_APPEALED,), {
            "status": ALARM_OPEN,
            "resolution_note": note,
        })
    await db.refresh(alarm)

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="alarm.resolve" if approve else "alarm.reject_appeal",
        resource_type="alarm", resource_id=str(alarm.id),
        detail={"kind": alarm.alarm_kind, "note": note},
    )
    await fanout.alarm_reviewed(db, ctx, alarm, approved=approve)
    return alarm


async def refresh_user_committed(
    session_factory: Callable[[], AsyncSession],
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> int:
    """
    On-access detection in its own transaction, so alarms raised here stick
    even when the caller's action is then refused because of them.
    """
    from worklog.core.rbac.service import get_tenant_user
    async with session_factory() as db:
        async with db.begin():
            user = await get_tenant_user(db, tenant_id, user_id)
            if not user:
                return 0
            return len(await refresh_user(db, tenant_id, user, now=now))
