import uuid
import pytest
from datetime import date, timedelta
from decimal import Decimal
from sqlalchemy import select

from conftest import TODAY
from worklog.core.errors import (
    BlockedByLock, EntryLocked, EntryNotFound, InvalidTransition, NotAuthorized, ValidationFailed,
)
from worklog.core.timesheets import service
from worklog.core.timesheets.schemas import EntryUpdate, ReviewAdjustment


async def test_pm_reject_forwards_to_admin_and_approval_syncs_billing(db, org, make_entry, session_factory, billing, email):
    from worklog.core.notifications.outbox import OutboxDispatcher
    from worklog.core.notifications.service import list_notifications

    entry = await make_entry(minutes=240, is_billable=True)
    [entry] = await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    assert entry.status == "pending_pm"

    entry = await service.reject_entry(db, org.pm_ctx, entry.id, "Logged against the wrong task")
    assert entry.status == "pending_admin"
    assert entry.rejection_reason == "Logged against the wrong task"
    assert entry.is_locked is False

    entry = await service.approve_entry(db, org.owner_ctx, entry.id, comment="Task is fine")
    assert entry.status == "approved"
    assert entry.is_locked is True
    assert entry.approved_by == org.owner.id
    await db.commit()

    events = await service.list_approval_events(db, org.member_ctx, entry.id)
    assert [(e.seq, e.actor_role, e.action, e.resulting_status) for e in events] == [
        (1, "self", "submit", "pending_pm"),
        (2, "project_manager", "reject", "pending_admin"),
        (3, "admin", "approve", "approved"),
    ]
    assert events[1].comment == "Logged against the wrong task"

    counts = await OutboxDispatcher(session_factory, email=email, billing=billing).drain()
    assert counts["retry"] == 0 and counts["failed"] == 0
    assert len(billing.calls) == 1
    entry_id, payload = billing.calls[0]
    assert entry_id == entry.id
    assert Decimal(payload["hourly_rate"]) == Decimal("50")
    assert payload["currency"] == "EUR"
    assert ("dev@acme.test", "timesheet_approved") in email.sent

    async with session_factory() as fresh:
        kinds = {n.kind for n in await list_notifications(fresh, org.member_ctx)}
    assert {"timesheet_submitted", "timesheet_status"} <= kinds


async def test_non_billable_approval_skips_billing(db, org, make_entry, session_factory, billing):
    from worklog.core.notifications.models import OutboxMessage
    entry = await make_entry(project=org.solo_project, task=org.solo_task, is_billable=False)
    [entry] = await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    await service.approve_entry(db, org.owner_ctx, entry.id)
    await db.commit()

    result = await db.execute(select(OutboxMessage).where(OutboxMessage.channel == "billing"))
    assert result.scalars().all() == []


async def test_project_without_pm_goes_straight_to_admin(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task)
    [entry] = await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    assert entry.status == "pending_admin"


async def test_pm_own_entry_skips_pm_review(db, org, make_entry):
    entry = await make_entry(org.pm_ctx)
    [entry] = await service.submit_entries(db, org.pm_ctx, [entry.id], today=TODAY)
    assert entry.status == "pending_admin"
    with pytest.raises(NotAuthorized):
        await service.approve_entry(db, org.pm_ctx, entry.id)


async def test_admin_cannot_approve_pending_pm(db, org, make_entry):
    entry = await make_entry()
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    with pytest.raises(InvalidTransition):
        await service.approve_entry(db, org.owner_ctx, entry.id)


async def test_member_cannot_review(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task)
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    with pytest.raises(NotAuthorized):
        await service.approve_entry(db, org.member_ctx, entry.id)


async def test_approved_entry_is_read_only(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task)
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    await service.approve_entry(db, org.owner_ctx, entry.id)

    with pytest.raises(EntryLocked):
        await service.update_entry(db, org.member_ctx, entry.id, EntryUpdate(duration_minutes=60), today=TODAY)
    with pytest.raises(EntryLocked):
        await service.update_entry(db, org.owner_ctx, entry.id, EntryUpdate(duration_minutes=60), today=TODAY)
    with pytest.raises(EntryLocked):
        await service.delete_entry(db, org.member_ctx, entry.id)
    with pytest.raises(InvalidTransition):
        await service.reject_entry(db, org.owner_ctx, entry.id, "Too late")


async def test_owner_cannot_edit_under_review_but_admin_can(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task, minutes=200)
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)

    with pytest.raises(EntryLocked):
        await service.update_entry(db, org.member_ctx, entry.id, EntryUpdate(duration_minutes=60), today=TODAY)

    entry = await service.update_entry(db, org.owner_ctx, entry.id, EntryUpdate(duration_minutes=180), today=TODAY)
    assert entry.duration_minutes == 180
    assert entry.status == "pending_admin"
    assert "[Admin Adjusted" in entry.remark
    assert entry.last_modified_by == org.owner.id


async def test_review_adjustment_is_recorded_on_the_event(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task, minutes=120)
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)

    entry = await service.approve_entry(
        db, org.owner_ctx, entry.id,
        adjustment=ReviewAdjustment(duration_minutes=90, is_billable=False),
    )
    assert entry.duration_minutes == 90
    assert entry.is_billable is False
    assert entry.remark.endswith("[Admin Adjusted: Time/Billable status updated]")

    events = await service.list_approval_events(db, org.owner_ctx, entry.id)
    assert events[-1].adjustment == {"duration_minutes": [120, 90], "is_billable": [True, False]}


async def test_draft_edit_and_delete(db, org, make_entry):
    entry = await make_entry(minutes=60)
    entry = await service.update_entry(db, org.member_ctx, entry.id, EntryUpdate(duration_minutes=75), today=TODAY)
    assert entry.duration_minutes == 75
    assert entry.remark is None

    await service.delete_entry(db, org.member_ctx, entry.id)
    with pytest.raises(EntryNotFound):
        await service.get_entry(db, org.member_ctx, entry.id)


async def test_submit_batch_is_all_or_nothing(db, org, make_entry):
    first = await make_entry(minutes=60)
    second = await make_entry(minutes=60)
    await service.submit_entries(db, org.member_ctx, [second.id], today=TODAY)

    with pytest.raises(InvalidTransition):
        await service.submit_entries(db, org.member_ctx, [first.id, second.id], today=TODAY)
    await db.refresh(first)
    assert first.status == "draft"


async def test_only_owner_submits(db, org, make_entry):
    entry = await make_entry()
    with pytest.raises(NotAuthorized):
        await service.submit_entries(db, org.owner_ctx, [entry.id], today=TODAY)


async def test_unknown_entry(db, org):
    missing = uuid.uuid4()
    with pytest.raises(EntryNotFound) as exc:
        await service.approve_entry(db, org.owner_ctx, missing)
    assert exc.value.status_code == 404
    assert exc.value.details["resource_id"] == str(missing)


async def test_remark_required_for_rework(make_entry):
    with pytest.raises(ValidationFailed) as exc:
        await make_entry(work_type="rework")
    assert exc.value.details["field"] == "remark"
    entry = await make_entry(work_type="rework", remark="Fixing review findings")
    assert entry.remark == "Fixing review findings"


async def test_future_dates_are_refused(make_entry):
    with pytest.raises(ValidationFailed):
        await make_entry(work_date=TODAY + timedelta(days=1))


async def test_settled_project_blocks_new_time(db, org, make_entry):
    org.project.status = "completed"
    await db.commit()
    with pytest.raises(BlockedByLock):
        await make_entry()


async def test_entry_snapshots_rate_and_currency(make_entry, org):
    entry = await make_entry()
    assert entry.hourly_rate == Decimal("50.00")
    assert entry.currency == "EUR"
    assert entry.owner_id == org.member.id
    assert entry.entry_type == "manual"


async def test_member_cannot_log_for_someone_else(make_entry, org):
    with pytest.raises(NotAuthorized):
        await make_entry(owner_id=org.pm.id)


async def test_day_totals_ignore_rejected(db, org, make_entry):
    day = date(2026, 3, 10)
    kept = await make_entry(work_date=day, minutes=300, project=org.solo_project, task=org.solo_task)
    dropped = await make_entry(work_date=day, minutes=100, project=org.solo_project, task=org.solo_task)
    await service.submit_entries(db, org.member_ctx, [dropped.id], today=TODAY)
    await service.reject_entry(db, org.owner_ctx, dropped.id, "Duplicate")

    totals = await service.day_totals(db, org.tenant.id, org.member.id, day, day)
    assert totals == {day: kept.duration_minutes}


async def test_pending_queue_per_reviewer(db, org, make_entry):
    pm_entry = await make_entry()
    admin_entry = await make_entry(project=org.solo_project, task=org.solo_task)
    await service.submit_entries(db, org.member_ctx, [pm_entry.id, admin_entry.id], today=TODAY)

    assert [e.id for e in await service.list_pending_for_actor(db, org.pm_ctx)] == [pm_entry.id]
    assert [e.id for e in await service.list_pending_for_actor(db, org.owner_ctx)] == [admin_entry.id]
    assert await service.list_pending_for_actor(db, org.member_ctx) == []
