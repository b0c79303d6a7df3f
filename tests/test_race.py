import pytest
from sqlalchemy import select, func

from conftest import TODAY
from worklog.core.errors import InvalidTransition
from worklog.core.timesheets import service
from worklog.core.timesheets.models import ApprovalEvent, TimesheetEntry


async def _pending_admin_entry(db, org, make_entry):
    entry = await make_entry(project=org.solo_project, task=org.solo_task)
    await service.submit_entries(db, org.member_ctx, [entry.id], today=TODAY)
    await db.commit()
    return entry


async def test_stale_status_write_is_refused(db, org, make_entry, session_factory):
    entry = await _pending_admin_entry(db, org, make_entry)

    # Both approvers read pending_admin before either writes
    async with session_factory() as first, session_factory() as second:
        seen_first = await first.get(TimesheetEntry, entry.id)
        seen_second = await second.get(TimesheetEntry, entry.id)
        assert seen_first.status == seen_second.status == "pending_admin"

        await service._compare_and_set_status(first, entry.id, "pending_admin", {"status": "approved", "is_locked": True})
        await first.commit()

        with pytest.raises(InvalidTransition) as exc:
            await service._compare_and_set_status(second, entry.id, "pending_admin", {"status": "rejected"})
        assert exc.value.details["expected_status"] == "pending_admin"
        await second.rollback()

    await db.refresh(entry)
    assert entry.status == "approved"


async def test_second_approver_gets_invalid_transition(db, org, make_entry, session_factory):
    entry = await _pending_admin_entry(db, org, make_entry)

    async with session_factory() as first:
        await service.approve_entry(first, org.owner_ctx, entry.id)
        await first.commit()

    async with session_factory() as second:
        with pytest.raises(InvalidTransition):
            await service.reject_entry(second, org.owner_ctx, entry.id, "Not billable")
        await second.rollback()

    result = await db.execute(
        select(func.count()).select_from(ApprovalEvent).where(
            ApprovalEvent.entry_id == entry.id, ApprovalEvent.action != "submit",
        )
    )
    assert result.scalar_one() == 1
