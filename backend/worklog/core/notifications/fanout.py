"""
Who hears about what.

Maps lifecycle events to outbox messages. Called inside the business
transaction; nothing here delivers anything.
"""
import uuid
from datetime import date
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.notifications.outbox import enqueue
from worklog.core.rbac.context import ActorContext
from worklog.core.rbac.service import project_manager_ids, tenant_owner_ids

STATUS_LABELS = {
    "pending_pm": "Pending PM approval",
    "pending_admin": "Pending admin approval",
    "approved": "Approved",
    "rejected": "Rejected",
}


async def _notify(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    recipients: Iterable[uuid.UUID],
    kind: str,
    payload: dict[str, Any],
    *,
    exclude: Iterable[uuid.UUID] = (),
) -> list[uuid.UUID]:
    skip = set(exclude)
    sent: list[uuid.UUID] = []
    for recipient_id in recipients:
        if recipient_id in skip or recipient_id in sent:
            continue
        await enqueue(db, tenant_id=tenant_id, channel="notify", kind=kind,
                      recipient_id=recipient_id, payload=payload)
        sent.append(recipient_id)
    return sent


def _entry_payload(entry, **extra: Any) -> dict[str, Any]:
    return {
        "entity_type": "timesheet_entry",
        "entity_id": str(entry.id),
        "entry_id": str(entry.id),
        "owner_id": str(entry.owner_id),
        "project_id": str(entry.project_id),
        "work_date": entry.work_date.isoformat(),
        "duration_minutes": entry.duration_minutes,
        "status": entry.status,
        **extra,
    }


# ── Timesheet entries ─────────────────────────────────────────────────────────

async def entries_submitted(db: AsyncSession, ctx: ActorContext, entries: list, *, today: date) -> None:
    """Acknowledge a submission batch to the submitter."""
    if not entries:
        return
    late = [e for e in entries if e.work_date < today]
    kind = "late_timesheet_submission" if late else "timesheet_submitted"
    minutes = sum(e.duration_minutes for e in entries)
    title = "Late timesheet submitted" if late else "Timesheet submitted"
    await _notify(db, ctx.tenant_id, [entries[0].owner_id], kind, {
        "title": title,
        "message": f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'} ({minutes} min) sent for approval",
        "entity_type": "timesheet_entry",
        "entry_ids": [str(e.id) for e in entries],
        "late_dates": sorted({e.work_date.isoformat() for e in late}),
    })


async def entry_transitioned(
    db: AsyncSession,
    ctx: ActorContext,
    entry,
    *,
    from_status: str,
    actor_role: str,
    action: str,
    comment: str | None = None,
) -> None:
    tenant_id = entry.tenant_id
    payload = _entry_payload(
        entry,
        from_status=from_status,
        action=action,
        actor_id=str(ctx.user_id),
        actor_role=actor_role,
        comment=comment,
        rejection_reason=entry.rejection_reason,
    )
    label = STATUS_LABELS.get(entry.status, entry.status)

    # Owner hears about every review decision; submit is acknowledged per batch
    if action != "submit":
        await _notify(db, tenant_id, [entry.owner_id], "timesheet_status", {
            **payload,
            "title": f"Timesheet {label}",
            "message": f"Your entry for {entry.work_date.isoformat()} is now {label.lower()}",
        })

    if entry.status == "pending_pm":
        pm_ids = await project_manager_ids(db, tenant_id, entry.project_id)
        await _notify(db, tenant_id, pm_ids, "timesheet_approval_needed", {
            **payload,
            "title": "Timesheet awaiting your approval",
            "message": f"Entry for {entry.work_date.isoformat()} needs PM review",
            "level": "pm",
        }, exclude=[entry.owner_id])

    elif entry.status == "pending_admin":
        owner_ids = await tenant_owner_ids(db, tenant_id)
        title = "Timesheet awaiting final approval"
        if from_status in ("pending_pm", "submitted") and action == "reject":
            title = "Timesheet recommended for rejection"
        elif from_status in ("pending_pm", "submitted"):
            title = "Timesheet approved by PM"
        await _notify(db, tenant_id, owner_ids, "timesheet_approval_needed", {
            **payload,
            "title": title,
            "message": f"Entry for {entry.work_date.isoformat()} needs a final decision",
            "level": "admin",
        }, exclude=[ctx.user_id])

    elif entry.status in ("approved", "rejected"):
        if entry.status == "approved" and entry.is_billable:
            await enqueue(db, tenant_id=tenant_id, channel="billing", kind="billable_entry_approved",
                          payload=_entry_payload(
                              entry,
                              hourly_rate=str(entry.hourly_rate) if entry.hourly_rate is not None else None,
                              currency=entry.currency,
                          ))
        await enqueue(db, tenant_id=tenant_id, channel="email",
                      kind=f"timesheet_{entry.status}", recipient_id=entry.owner_id, payload=payload)
        pm_ids = await project_manager_ids(db, tenant_id, entry.project_id)
        await _notify(db, tenant_id, pm_ids, "timesheet_final_decision", {
            **payload,
            "title": f"Timesheet final {label.lower()}",
            "message": f"Entry for {entry.work_date.isoformat()} was {label.lower()} by the admin",
        }, exclude=[ctx.user_id, entry.owner_id])


# ── Enforcement ───────────────────────────────────────────────────────────────

async def lockout_raised(db: AsyncSession, alarm, manager_ids: list[uuid.UUID]) -> None:
    await _notify(db, alarm.tenant_id, manager_ids, "team_member_lockout_notice", {
        "title": "Team member locked out",
        "message": "A team member ignored repeated timesheet alarms and is locked out of the timer",
        "entity_type": "alarm",
        "entity_id": str(alarm.id),
        "user_id": str(alarm.recipient_id),
    }, exclude=[alarm.recipient_id])


async def alarm_appealed(db: AsyncSession, alarm, reviewer_ids: list[uuid.UUID]) -> None:
    await _notify(db, alarm.tenant_id, reviewer_ids, "alarm_appeal_submitted", {
        "title": "Alarm appeal awaiting review",
        "message": alarm.appeal_reason,
        "entity_type": "alarm",
        "entity_id": str(alarm.id),
        "alarm_kind": alarm.alarm_kind,
        "user_id": str(alarm.recipient_id),
    }, exclude=[alarm.recipient_id])


async def alarm_reviewed(db: AsyncSession, ctx: ActorContext, alarm, *, approved: bool) -> None:
    kind = "alarm_resolved" if approved else "alarm_appeal_rejected"
    title = "Alarm resolved" if approved else "Appeal rejected"
    await _notify(db, alarm.tenant_id, [alarm.recipient_id], kind, {
        "title": title,
        "message": alarm.resolution_note,
        "entity_type": "alarm",
        "entity_id": str(alarm.id),
        "alarm_kind": alarm.alarm_kind,
        "reviewer_id": str(ctx.user_id),
    }, exclude=[ctx.user_id])


# ── Audit lock ────────────────────────────────────────────────────────────────

async def audit_lock_changed(db: AsyncSession, ctx: ActorContext, user_id: uuid.UUID, locked: bool) -> None:
    await _notify(db, ctx.tenant_id, [user_id], "timesheet_audit_lock", {
        "title": "Timesheets locked for audit" if locked else "Timesheet audit lock lifted",
        "message": None if not locked else "You cannot create or edit entries until an admin unlocks them",
        "entity_type": "user",
        "entity_id": str(user_id),
        "locked": locked,
    }, exclude=[ctx.user_id])
