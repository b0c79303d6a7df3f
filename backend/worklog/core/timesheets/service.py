import logging
import uuid
from datetime import datetime, date
from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import (
    EntryLocked, EntryNotFound, InvalidTransition, NotAuthorized, NotFound, ValidationFailed,
)
from worklog.core.rbac.context import ActorContext
from worklog.core.timesheets import policy
from worklog.core.timesheets.models import (
    TimesheetEntry, ApprovalEvent,
    REMARK_REQUIRED_WORK_TYPES, TERMINAL_STATUSES,
)
from worklog.core.timesheets.policy import Action, ActorRole
from worklog.core.timesheets.schemas import EntryCreate, EntryUpdate, ReviewAdjustment
from worklog.db.base import utcnow

logger = logging.getLogger(__name__)


# ── Lookup ────────────────────────────────────────────────────────────────────

async def _get_entry_locked(db: AsyncSession, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> TimesheetEntry | None:
    """Row-level lock for state transitions; always reloads current status."""
    result = await db.execute(
        select(TimesheetEntry)
        .where(
            TimesheetEntry.id == entry_id,
            TimesheetEntry.tenant_id == tenant_id,
            TimesheetEntry.is_deleted == False,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _can_view(ctx: ActorContext, entry: TimesheetEntry) -> bool:
    return ctx.is_admin or entry.owner_id == ctx.user_id or ctx.manages(entry.project_id)


async def get_entry(db: AsyncSession, ctx: ActorContext, entry_id: uuid.UUID) -> TimesheetEntry:
    result = await db.execute(
        select(TimesheetEntry).where(
            TimesheetEntry.id == entry_id,
            TimesheetEntry.tenant_id == ctx.tenant_id,
            TimesheetEntry.is_deleted == False,
        )
    )
    entry = result.scalar_one_or_none()
    if not entry:
        raise EntryNotFound(entry_id)
    if not _can_view(ctx, entry):
        raise NotAuthorized("You cannot view this entry")
    return entry


async def list_entries(
    db: AsyncSession,
    ctx: ActorContext,
    owner_id: uuid.UUID | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[TimesheetEntry]:
    owner_id = owner_id or ctx.user_id
    if owner_id != ctx.user_id and not ctx.is_reviewer:
        raise NotAuthorized("You cannot list another user's entries")
    q = select(TimesheetEntry).where(
        TimesheetEntry.tenant_id == ctx.tenant_id,
        TimesheetEntry.owner_id == owner_id,
        TimesheetEntry.is_deleted == False,
    )
    if owner_id != ctx.user_id and not ctx.is_admin:
        q = q.where(TimesheetEntry.project_id.in_(ctx.managed_project_ids))
    if status:
        q = q.where(TimesheetEntry.status == status)
    if date_from:
        q = q.where(TimesheetEntry.work_date >= date_from)
    if date_to:
        q = q.where(TimesheetEntry.work_date <= date_to)
    q = q.order_by(TimesheetEntry.work_date.desc(), TimesheetEntry.created_at.desc())
    result = await db.execute(q)
    return list(result.scalars().all())


async def list_pending_for_actor(db: AsyncSession, ctx: ActorContext) -> list[TimesheetEntry]:
    """Entries waiting on this actor, per the routing table."""
    clauses = []
    if ctx.is_admin:
        clauses.append(TimesheetEntry.status.in_((policy.PENDING_ADMIN, policy.SUBMITTED)))
    if ctx.managed_project_ids:
        clauses.append(and_(
            TimesheetEntry.status.in_((policy.PENDING_PM, policy.SUBMITTED)),
            TimesheetEntry.project_id.in_(ctx.managed_project_ids),
            TimesheetEntry.owner_id != ctx.user_id,
        ))
    if not clauses:
        return []
    result = await db.execute(
        select(TimesheetEntry)
        .where(
            TimesheetEntry.tenant_id == ctx.tenant_id,
            TimesheetEntry.is_deleted == False,
            or_(*clauses),
        )
        .order_by(TimesheetEntry.submitted_at, TimesheetEntry.work_date)
    )
    return list(result.scalars().all())


async def list_approval_events(db: AsyncSession, ctx: ActorContext, entry_id: uuid.UUID) -> list[ApprovalEvent]:
    await get_entry(db, ctx, entry_id)
    result = await db.execute(
        select(ApprovalEvent)
        .where(ApprovalEvent.entry_id == entry_id, ApprovalEvent.tenant_id == ctx.tenant_id)
        .order_by(ApprovalEvent.acted_at, ApprovalEvent.seq)
    )
    return list(result.scalars().all())


# ── Validation ────────────────────────────────────────────────────────────────

def _require_remark(work_type: str, remark: str | None, under_alarm: bool) -> None:
    if remark and remark.strip():
        return
    if work_type in REMARK_REQUIRED_WORK_TYPES:
        raise ValidationFailed(f"A remark is required for '{work_type}' entries", field="remark")
    if under_alarm:
        raise ValidationFailed("A remark is required while a timesheet alarm is open", field="remark")


def _assert_owner_editable(ctx: ActorContext, entry: TimesheetEntry) -> None:
    if entry.status in TERMINAL_STATUSES or entry.is_locked:
        raise EntryLocked(
            f"Entry is {entry.status} and can no longer be changed",
            {"entry_id": str(entry.id), "status": entry.status},
        )
    if entry.status == policy.DRAFT:
        if entry.owner_id != ctx.user_id and not ctx.is_admin:
            raise NotAuthorized("Only the owner can change a draft entry")
        return
    # Under review: owner is read-only, admins may correct before the decision
    if not ctx.is_admin:
        raise EntryLocked(
            "Entry is under review and is read-only until a decision is made",
            {"entry_id": str(entry.id), "status": entry.status},
        )


# ── Entries ───────────────────────────────────────────────────────────────────

async def record_entry(
    db: AsyncSession,
    ctx: ActorContext,
    *,
    owner_id: uuid.UUID,
    work_date: date,
    project_id: uuid.UUID,
    task_id: uuid.UUID,
    duration_minutes: int,
    work_type: str = "development",
    is_billable: bool = True,
    milestone_id: uuid.UUID | None = None,
    story_id: uuid.UUID | None = None,
    sprint_id: uuid.UUID | None = None,
    description: str | None = None,
    remark: str | None = None,
    entry_type: str = "manual",
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    location: dict | None = None,
    allow_settled: bool = False,
    today: date | None = None,
    now: datetime | None = None,
) -> TimesheetEntry:
    """
    Shared insert path for manual entries and stopped timers.
    Validates the audit lock, settled phases and remark rules, snapshots
    the rate, and resolves any gap alarm the new minutes close, all in the
    caller's transaction.
    """
    from worklog.core.enforcement.service import clear_gaps_for_day, has_active_alarm
    from worklog.core.locks.service import assert_can_mutate
    from worklog.core.projects.service import resolve_work_context
    from worklog.core.rbac.service import get_tenant_user
    from worklog.core.tenants.service import tenant_today

    if owner_id != ctx.user_id and not ctx.is_admin:
        raise NotAuthorized("Only a tenant owner or admin can log time for another user")
    owner = await get_tenant_user(db, ctx.tenant_id, owner_id)
    if not owner:
        raise NotFound("User", owner_id)
    await assert_can_mutate(db, ctx, owner_id)

    now = now or utcnow()
    today = today or await tenant_today(db, ctx.tenant_id, now)
    if work_date > today:
        raise ValidationFailed("Time cannot be logged for a future date", field="work_date")

    project, task, milestone = await resolve_work_context(
        db, ctx.tenant_id, project_id, task_id, milestone_id, allow_settled=allow_settled,
    )
    under_alarm = await has_active_alarm(db, ctx.tenant_id, owner_id)
    _require_remark(work_type, remark, under_alarm)

    entry = TimesheetEntry(
        tenant_id=ctx.tenant_id,
        owner_id=owner_id,
        work_date=work_date,
        project_id=project.id,
        task_id=task.id,
        milestone_id=milestone.id if milestone else None,
        story_id=story_id,
        sprint_id=sprint_id,
        duration_minutes=duration_minutes,
        work_type=work_type,
        is_billable=is_billable,
        hourly_rate=owner.hourly_rate,
        currency=project.currency,
        description=description,
        remark=remark.strip() if remark else None,
        status=policy.DRAFT,
        is_locked=False,
        created_under_alarm=under_alarm,
        entry_type=entry_type,
        start_time=start_time,
        end_time=end_time,
        location=location,
        last_modified_by=ctx.user_id,
        last_modified_at=now,
    )
    db.add(entry)
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timesheet_entry.create", resource_type="timesheet_entry",
        resource_id=str(entry.id),
        detail={
            "owner_id": str(owner_id),
            "work_date": str(work_date),
            "duration_minutes": duration_minutes,
            "entry_type": entry_type,
            "on_behalf": owner_id != ctx.user_id,
        },
    )
    await clear_gaps_for_day(db, ctx.tenant_id, owner_id, work_date, actor_id=ctx.user_id, now=now)
    await db.refresh(entry)
    return entry


async def create_entry(
    db: AsyncSession,
    ctx: ActorContext,
    data: EntryCreate,
    today: date | None = None,
) -> TimesheetEntry:
    return await record_entry(
        db, ctx,
        owner_id=data.owner_id or ctx.user_id,
        work_date=data.work_date,
        project_id=data.project_id,
        task_id=data.task_id,
        milestone_id=data.milestone_id,
        story_id=data.story_id,
        sprint_id=data.sprint_id,
        duration_minutes=data.duration_minutes,
        work_type=data.work_type,
        is_billable=data.is_billable,
        description=data.description,
        remark=data.remark,
        start_time=data.start_time,
        end_time=data.end_time,
        today=today,
    )


async def update_entry(
    db: AsyncSession,
    ctx: ActorContext,
    entry_id: uuid.UUID,
    data: EntryUpdate,
    today: date | None = None,
) -> TimesheetEntry:
    from worklog.core.enforcement.service import clear_gaps_for_day
    from worklog.core.locks.service import assert_can_mutate
    from worklog.core.projects.service import resolve_work_context
    from worklog.core.tenants.service import tenant_today

    entry = await _get_entry_locked(db, ctx.tenant_id, entry_id)
    if not entry:
        raise EntryNotFound(entry_id)
    _assert_owner_editable(ctx, entry)
    await assert_can_mutate(db, ctx, entry.owner_id)

    changes = data.model_dump(exclude_unset=True)
    if not changes:
        return entry

    if "work_date" in changes:
        today = today or await tenant_today(db, ctx.tenant_id)
        if changes["work_date"] > today:
            raise ValidationFailed("Time cannot be logged for a future date", field="work_date")

    if {"project_id", "task_id", "milestone_id"} & changes.keys():
        project, task, milestone = await resolve_work_context(
            db, ctx.tenant_id,
            changes.get("project_id", entry.project_id),
            changes.get("task_id", entry.task_id),
            changes.get("milestone_id", entry.milestone_id),
        )
        changes["project_id"] = project.id
        changes["task_id"] = task.id
        changes["milestone_id"] = milestone.id if milestone else None
        changes["currency"] = project.currency

    _require_remark(
        changes.get("work_type", entry.work_type),
        changes.get("remark", entry.remark),
        entry.created_under_alarm,
    )

    old_date = entry.work_date
    for field, value in changes.items():
        setattr(entry, field, value)
    if entry.status != policy.DRAFT:
        entry.remark = _append_remark(entry.remark, "[Admin Adjusted: entry corrected during review]")
    entry.last_modified_by = ctx.user_id
    entry.last_modified_at = utcnow()
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timesheet_entry.update", resource_type="timesheet_entry",
        resource_id=str(entry.id),
        detail={k: str(v) for k, v in changes.items()},
    )
    await clear_gaps_for_day(db, ctx.tenant_id, entry.owner_id, entry.work_date, actor_id=ctx.user_id)
    if old_date != entry.work_date:
        await clear_gaps_for_day(db, ctx.tenant_id, entry.owner_id, old_date, actor_id=ctx.user_id)
    await db.refresh(entry)
    return entry


async def delete_entry(db: AsyncSession, ctx: ActorContext, entry_id: uuid.UUID) -> None:
    from worklog.core.locks.service import assert_can_mutate

    entry = await _get_entry_locked(db, ctx.tenant_id, entry_id)
    if not entry:
        raise EntryNotFound(entry_id)
    if entry.status != policy.DRAFT:
        raise EntryLocked(
            f"Only draft entries can be deleted; entry is {entry.status}",
            {"entry_id": str(entry.id), "status": entry.status},
        )
    _assert_owner_editable(ctx, entry)
    await assert_can_mutate(db, ctx, entry.owner_id)

    entry.is_deleted = True
    entry.last_modified_by = ctx.user_id
    entry.last_modified_at = utcnow()
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
        action="timesheet_entry.delete", resource_type="timesheet_entry",
        resource_id=str(entry.id), detail={},
    )


def _append_remark(remark: str | None, line: str) -> str:
    return f"{remark}\n{line}" if remark else line


# ── State machine ─────────────────────────────────────────────────────────────

async def _compare_and_set_status(
    db: AsyncSession,
    entry_id: uuid.UUID,
    expected_status: str,
    values: dict,
) -> None:
    """Status write guarded by the status we routed from; a lost race writes nothing."""
    result = await db.execute(
        update(TimesheetEntry)
        .where(
            TimesheetEntry.id == entry_id,
            TimesheetEntry.status == expected_status,
            TimesheetEntry.is_deleted == False,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(
            "Entry was changed by someone else; re-fetch it and try again",
            {"entry_id": str(entry_id), "expected_status": expected_status},
        )


async def _apply_transition(
    db: AsyncSession,
    ctx: ActorContext,
    entry: TimesheetEntry,
    *,
    role: ActorRole,
    action: Action,
    target: str,
    comment: str | None = None,
    adjustment: dict | None = None,
    now: datetime | None = None,
) -> TimesheetEntry:
    now = now or utcnow()
    from_status = entry.status
    values = {"status": target, "last_modified_by": ctx.user_id, "last_modified_at": now}
    if action == Action.SUBMIT:
        values["submitted_at"] = now
    if action == Action.REJECT:
        values["rejection_reason"] = comment
    if target == policy.APPROVED:
        values.update(is_locked=True, approved_by=ctx.user_id, approved_at=now)
    await _compare_and_set_status(db, entry.id, from_status, values)

    seq_result = await db.execute(
        select(func.coalesce(func.max(ApprovalEvent.seq), 0)).where(ApprovalEvent.entry_id == entry.id)
    )
    db.add(ApprovalEvent(
        tenant_id=entry.tenant_id,
        entry_id=entry.id,
        seq=seq_result.scalar_one() + 1,
        actor_id=ctx.user_id,
        actor_role=role.value,
        action=action.value,
        from_status=from_status,
        resulting_status=target,
        comment=comment,
        adjustment=adjustment,
        acted_at=now,
    ))
    await db.flush()
    await db.refresh(entry)

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=entry.tenant_id, user_id=ctx.user_id,
        action=f"timesheet_entry.{action.value}", resource_type="timesheet_entry",
        resource_id=str(entry.id),
        detail={"from": from_status, "to": target, "actor_role": role.value},
    )
    from worklog.core.notifications import fanout
    await fanout.entry_transitioned(
        db, ctx, entry,
        from_status=from_status, actor_role=role.value, action=action.value, comment=comment,
    )
    logger.info("entry %s %s -> %s by %s", entry.id, from_status, target, role.value)
    return entry


async def submit_entries(
    db: AsyncSession,
    ctx: ActorContext,
    entry_ids: list[uuid.UUID],
    today: date | None = None,
) -> list[TimesheetEntry]:
    """
    Submit drafts for approval. The whole batch is routed before any write,
    so one bad entry fails the request without partial submits.
    """
    from worklog.core.locks.service import assert_can_mutate
    from worklog.core.projects.service import resolve_work_context
    from worklog.core.rbac.service import project_manager_ids
    from worklog.core.tenants.service import tenant_today

    ids = sorted(set(entry_ids))
    if not ids:
        raise ValidationFailed("No entries to submit", field="entry_ids")

    routed: list[tuple[TimesheetEntry, ActorRole, str]] = []
    for entry_id in ids:
        entry = await _get_entry_locked(db, ctx.tenant_id, entry_id)
        if not entry:
            raise EntryNotFound(entry_id)
        if entry.owner_id != ctx.user_id:
            raise NotAuthorized("Only the owner can submit an entry")
        await assert_can_mutate(db, ctx, entry.owner_id)
        await resolve_work_context(db, ctx.tenant_id, entry.project_id, entry.task_id, entry.milestone_id)
        pm_ids = [pm for pm in await project_manager_ids(db, ctx.tenant_id, entry.project_id) if pm != entry.owner_id]
        role, target = policy.route(
            entry.status,
            policy.actor_roles(ctx, entry.owner_id, entry.project_id),
            Action.SUBMIT,
            has_project_manager=bool(pm_ids),
        )
        routed.append((entry, role, target))

    now = utcnow()
    submitted = []
    for entry, role, target in routed:
        submitted.append(await _apply_transition(
            db, ctx, entry, role=role, action=Action.SUBMIT, target=target, now=now,
        ))

    from worklog.core.notifications import fanout
    today = today or await tenant_today(db, ctx.tenant_id, now)
    await fanout.entries_submitted(db, ctx, submitted, today=today)
    return submitted


async def _review(
    db: AsyncSession,
    ctx: ActorContext,
    entry_id: uuid.UUID,
    action: Action,
    comment: str | None,
    adjustment: ReviewAdjustment | None = None,
) -> TimesheetEntry:
    entry = await _get_entry_locked(db, ctx.tenant_id, entry_id)
    if not entry:
        raise EntryNotFound(entry_id)

    roles = [r for r in policy.actor_roles(ctx, entry.owner_id, entry.project_id) if r != ActorRole.SELF]
    if not roles:
        raise NotAuthorized("You are not an approver for this entry")
    if entry.is_locked and not ctx.is_admin:
        raise EntryLocked(
            "Entry is locked",
            {"entry_id": str(entry.id), "status": entry.status},
        )
    role, target = policy.route(entry.status, roles, action)

    applied = None
    if adjustment is not None:
        applied = await _apply_adjustment(db, ctx, entry, adjustment)

    return await _apply_transition(
        db, ctx, entry, role=role, action=action, target=target,
        comment=comment, adjustment=applied,
    )


async def _apply_adjustment(
    db: AsyncSession,
    ctx: ActorContext,
    entry: TimesheetEntry,
    adjustment: ReviewAdjustment,
) -> dict | None:
    """Reviewer edit persisted ahead of the status change; not a state of its own."""
    changed: dict = {}
    if adjustment.duration_minutes is not None and adjustment.duration_minutes != entry.duration_minutes:
        changed["duration_minutes"] = [entry.duration_minutes, adjustment.duration_minutes]
        entry.duration_minutes = adjustment.duration_minutes
    if adjustment.is_billable is not None and adjustment.is_billable != entry.is_billable:
        changed["is_billable"] = [entry.is_billable, adjustment.is_billable]
        entry.is_billable = adjustment.is_billable
    if not changed:
        return None
    entry.remark = _append_remark(entry.remark, "[Admin Adjusted: Time/Billable status updated]")
    entry.last_modified_by = ctx.user_id
    entry.last_modified_at = utcnow()
    await db.flush()

    from worklog.core.audit.service import audit
    await audit(db, tenant_id=entry.tenant_id, user_id=ctx.user_id,
        action="timesheet_entry.adjust", resource_type="timesheet_entry",
        resource_id=str(entry.id), detail=changed,
    )
    return changed


async def approve_entry(
    db: AsyncSession,
    ctx: ActorContext,
    entry_id: uuid.UUID,
    comment: str | None = None,
    adjustment: ReviewAdjustment | None = None,
) -> TimesheetEntry:
    return await _review(db, ctx, entry_id, Action.APPROVE, comment, adjustment)


async def reject_entry(
    db: AsyncSession,
    ctx: ActorContext,
    entry_id: uuid.UUID,
    reason: str,
) -> TimesheetEntry:
    if not reason or not reason.strip():
        raise ValidationFailed("A rejection reason is required", field="reason")
    return await _review(db, ctx, entry_id, Action.REJECT, reason.strip())


async def day_totals(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    owner_id: uuid.UUID,
    date_from: date,
    date_to: date,
) -> dict[date, int]:
    """Logged minutes per day, counting every entry that is not rejected."""
    result = await db.execute(
        select(TimesheetEntry.work_date, func.sum(TimesheetEntry.duration_minutes))
        .where(
            TimesheetEntry.tenant_id == tenant_id,
            TimesheetEntry.owner_id == owner_id,
            TimesheetEntry.is_deleted == False,
            TimesheetEntry.status != policy.REJECTED,
            TimesheetEntry.work_date >= date_from,
            TimesheetEntry.work_date <= date_to,
        )
        .group_by(TimesheetEntry.work_date)
    )
    return {row[0]: int(row[1] or 0) for row in result.all()}
