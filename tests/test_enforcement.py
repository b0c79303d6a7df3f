import pytest
from datetime import date
from sqlalchemy import select, func

from conftest import NOW, TODAY
from worklog.core.audit.models import AuditLog
from worklog.core.enforcement import service
from worklog.core.errors import (
    AlarmAlreadyResolved, BlockedByAlarm, InvalidTransition, NotAuthorized, ValidationFailed,
)
from worklog.core.notifications.models import Notification, OutboxMessage
from worklog.core.timer import service as timer
from worklog.core.timer.schemas import ClockStart


def _start(org):
    return ClockStart(project_id=org.project.id, task_id=org.task.id)


async def _alarm_count(db, **filters) -> int:
    q = select(func.count()).select_from(Notification).where(Notification.category == "alarm")
    for name, value in filters.items():
        q = q.where(getattr(Notification, name) == value)
    return (await db.execute(q)).scalar_one()


def test_candidate_days_are_working_days_of_this_month():
    assert service.candidate_days(date(2026, 3, 9)) == [
        date(2026, 3, 6), date(2026, 3, 5), date(2026, 3, 4), date(2026, 3, 3), date(2026, 3, 2),
    ]
    assert service.candidate_days(date(2026, 3, 2)) == []
    assert service.candidate_days(date(2026, 3, 11), since=date(2026, 3, 10)) == [date(2026, 3, 10)]


async def test_missing_entry_blocks_timer_until_appeal_is_approved(db, org):
    [alarm] = await service.refresh_user(db, org.tenant.id, org.member, now=NOW)
    assert alarm.alarm_kind == "missing-entry"
    assert alarm.alarm_date == date(2026, 3, 10)
    assert alarm.status == "OPEN"
    assert alarm.severity == "high"

    with pytest.raises(BlockedByAlarm) as exc:
        await timer.start(db, org.member_ctx, _start(org), now=NOW)
    assert exc.value.status_code == 423
    assert exc.value.details["alarms"][0]["kind"] == "missing-entry"
    assert "2026-03-10" in exc.value.details["next_step"]

    alarm = await service.appeal(db, org.member_ctx, alarm.id, "Public holiday at the client site", now=NOW)
    assert alarm.status == "APPEALED"
    with pytest.raises(BlockedByAlarm):
        await timer.start(db, org.member_ctx, _start(org), now=NOW)

    alarm = await service.resolve(db, org.pm_ctx, alarm.id, approve=True, note="Confirmed holiday", now=NOW)
    assert alarm.status == "RESOLVED"
    assert alarm.resolved_by == org.pm.id

    assert await service.refresh_user(db, org.tenant.id, org.member, now=NOW) == []
    session = await timer.start(db, org.member_ctx, _start(org), now=NOW)
    assert session.stopped_at is None


async def test_detection_is_idempotent(db, org):
    first = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    second = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    assert len(first) == 1
    assert second == []
    assert await _alarm_count(db, recipient_id=org.member.id) == 1
    await db.refresh(org.member)
    assert org.member.violation_count == 1


async def test_partial_day_raises_incomplete_day(db, org, make_entry):
    await make_entry(work_date=date(2026, 3, 10), minutes=200)
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    assert alarm.alarm_kind == "incomplete-day"
    assert alarm.payload["logged_minutes"] == 200


async def test_full_days_raise_nothing(db, org, make_entry):
    for day in service.candidate_days(TODAY, since=date(2026, 3, 2)):
        await make_entry(work_date=day, minutes=480)
    assert await service.evaluate_user(db, org.tenant.id, org.member, TODAY) == []


async def test_latest_short_day_is_reported_first(db, org, make_entry):
    await make_entry(work_date=date(2026, 3, 10), minutes=480)
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    assert alarm.alarm_kind == "missing-entry"
    assert alarm.alarm_date == date(2026, 3, 9)


async def test_managers_are_not_enforced(db, org):
    assert await service.evaluate_user(db, org.tenant.id, org.pm, TODAY) == []
    assert await service.evaluate_user(db, org.tenant.id, org.owner, TODAY) == []


async def test_resolving_twice_is_an_error_without_a_second_record(db, org):
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    await service.resolve(db, org.owner_ctx, alarm.id, approve=True, now=NOW)
    with pytest.raises(AlarmAlreadyResolved) as exc:
        await service.resolve(db, org.owner_ctx, alarm.id, approve=True, now=NOW)
    assert exc.value.status_code == 409

    result = await db.execute(
        select(func.count()).select_from(AuditLog).where(
            AuditLog.action == "alarm.resolve", AuditLog.resource_id == str(alarm.id),
        )
    )
    assert result.scalar_one() == 1


async def test_entry_for_the_day_clears_the_gap(db, org, make_entry):
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)

    with pytest.raises(ValidationFailed) as exc:
        await make_entry(work_date=date(2026, 3, 10), minutes=480)
    assert exc.value.details["field"] == "remark"

    entry = await make_entry(work_date=date(2026, 3, 10), minutes=480, remark="Forgot to log, was on site")
    assert entry.created_under_alarm is True
    await db.refresh(alarm)
    assert alarm.status == "RESOLVED"
    assert alarm.resolution_note == "Cleared by logged time"


async def test_three_violations_lock_the_timer_and_resolution_resets(db, org):
    await service.evaluate_user(db, org.tenant.id, org.member, date(2026, 3, 11))
    await service.evaluate_user(db, org.tenant.id, org.member, date(2026, 3, 12))
    raised = await service.evaluate_user(db, org.tenant.id, org.member, date(2026, 3, 13))

    assert [a.alarm_kind for a in raised] == ["missing-entry", "lockout"]
    lockout = raised[-1]
    assert lockout.severity == "critical"
    await db.refresh(org.member)
    assert org.member.violation_count == 3
    await db.commit()

    result = await db.execute(
        select(OutboxMessage.recipient_id).where(OutboxMessage.kind == "team_member_lockout_notice")
    )
    assert set(result.scalars().all()) == {org.pm.id, org.owner.id}

    await service.resolve(db, org.owner_ctx, lockout.id, approve=True, note="Talked it through", now=NOW)
    await db.refresh(org.member)
    assert org.member.violation_count == 0

    # A fourth day does not relock straight away
    raised = await service.evaluate_user(db, org.tenant.id, org.member, date(2026, 3, 16))
    assert [a.alarm_kind for a in raised] == ["missing-entry"]


async def test_appeal_rules(db, org):
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)

    with pytest.raises(NotAuthorized):
        await service.appeal(db, org.pm_ctx, alarm.id, "Not mine")
    with pytest.raises(ValidationFailed):
        await service.appeal(db, org.member_ctx, alarm.id, "   ")

    await service.appeal(db, org.member_ctx, alarm.id, "Was travelling")
    with pytest.raises(InvalidTransition):
        await service.appeal(db, org.member_ctx, alarm.id, "Again")

    alarm = await service.resolve(db, org.pm_ctx, alarm.id, approve=False, note="Travel is work time")
    assert alarm.status == "OPEN"
    with pytest.raises(InvalidTransition):
        await service.resolve(db, org.pm_ctx, alarm.id, approve=False)

    await service.resolve(db, org.pm_ctx, alarm.id, approve=True)
    with pytest.raises(AlarmAlreadyResolved):
        await service.appeal(db, org.member_ctx, alarm.id, "Too late")


async def test_members_cannot_resolve_their_own_alarms(db, org):
    [alarm] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    with pytest.raises(NotAuthorized):
        await service.resolve(db, org.member_ctx, alarm.id, approve=True)


async def test_overdue_task_raises_one_delay_alarm(db, org):
    org.task.due_date = date(2026, 3, 5)
    await db.flush()
    raised = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    assert sorted(a.alarm_kind for a in raised) == ["missing-entry", "task-delay"]
    assert await service.evaluate_user(db, org.tenant.id, org.member, TODAY) == []
    assert await _alarm_count(db, alarm_kind="task-delay") == 1


async def test_gate_status(db, org):
    status = await service.gate_status(db, org.member_ctx, now=NOW)
    assert status["timer_blocked"] is True
    assert status["violation_count"] == 1
    assert status["alarms"][0]["alarm_date"] == "2026-03-10"

    with pytest.raises(NotAuthorized):
        await service.gate_status(db, org.member_ctx, user_id=org.pm.id, now=NOW)
    pm_view = await service.gate_status(db, org.pm_ctx, user_id=org.member.id, now=NOW)
    assert pm_view["timer_blocked"] is True


async def test_review_queue_puts_appeals_first(db, org):
    [gap] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    org.task.due_date = date(2026, 3, 5)
    await db.flush()
    [delay] = await service.evaluate_user(db, org.tenant.id, org.member, TODAY)
    await service.appeal(db, org.member_ctx, delay.id, "Blocked by the client")

    queue = await service.list_alarms_for_review(db, org.pm_ctx)
    assert [a.id for a in queue] == [delay.id, gap.id]
    with pytest.raises(NotAuthorized):
        await service.list_alarms_for_review(db, org.member_ctx)


async def test_sweep_runs_per_tenant_and_is_repeatable(db, org, session_factory):
    assert await service.sweep(session_factory, now=NOW) == 1
    assert await service.sweep(session_factory, now=NOW) == 0
    assert await _alarm_count(db, recipient_id=org.member.id) == 1


async def test_on_access_detection_commits_even_when_start_is_refused(org, session_factory):
    assert await service.refresh_user_committed(session_factory, org.tenant.id, org.member.id, now=NOW) == 1

    async with session_factory() as attempt:
        with pytest.raises(BlockedByAlarm):
            await timer.start(attempt, org.member_ctx, _start(org), now=NOW)
        await attempt.rollback()

    async with session_factory() as check:
        assert await service.has_active_alarm(check, org.tenant.id, org.member.id)
