import pytest
from datetime import timedelta

from conftest import RecordingBillingSync
from worklog.core.notifications import transports
from worklog.core.notifications.models import Notification, OutboxMessage
from worklog.core.notifications.outbox import OutboxDispatcher, enqueue
from worklog.db.base import utcnow
from worklog.settings import get_settings


async def _queue_pair(db, org):
    await enqueue(db, tenant_id=org.tenant.id, channel="billing", kind="billable_entry_approved",
                  payload={"entry_id": str(org.task.id), "duration_minutes": 60})
    await enqueue(db, tenant_id=org.tenant.id, channel="notify", kind="timesheet_status",
                  recipient_id=org.member.id, payload={"title": "Timesheet Approved"})
    await db.commit()


async def test_failed_delivery_does_not_block_others(db, org, session_factory, email):
    await _queue_pair(db, org)
    dispatcher = OutboxDispatcher(session_factory, email=email, billing=RecordingBillingSync(fail=True), max_attempts=2)

    counts = await dispatcher.drain()
    assert counts == {"sent": 1, "retry": 1, "failed": 0}

    async with session_factory() as check:
        notes = (await check.execute(
            Notification.__table__.select().where(Notification.recipient_id == org.member.id)
        )).all()
        billing = (await check.execute(
            OutboxMessage.__table__.select().where(OutboxMessage.channel == "billing")
        )).one()
    assert len(notes) == 1
    assert billing.status == "pending"
    assert billing.attempts == 1
    assert "billing endpoint unavailable" in billing.last_error

    # Not due again until the backoff passes
    assert await dispatcher.drain() == {"sent": 0, "retry": 0, "failed": 0}
    counts = await dispatcher.drain(now=utcnow() + timedelta(hours=1))
    assert counts == {"sent": 0, "retry": 0, "failed": 1}


async def test_retry_succeeds_once_the_endpoint_recovers(db, org, session_factory, email):
    await _queue_pair(db, org)
    flaky = RecordingBillingSync(fail=True)
    dispatcher = OutboxDispatcher(session_factory, email=email, billing=flaky)
    await dispatcher.drain()

    flaky.fail = False
    counts = await dispatcher.drain(now=utcnow() + timedelta(hours=1))
    assert counts == {"sent": 1, "retry": 0, "failed": 0}
    assert len(flaky.calls) == 1


async def test_rolled_back_transition_sends_nothing(db, org, session_factory, billing, email):
    await enqueue(db, tenant_id=org.tenant.id, channel="notify", kind="timesheet_status",
                  recipient_id=org.member.id, payload={"title": "Never sent"})
    await db.rollback()

    counts = await OutboxDispatcher(session_factory, email=email, billing=billing).drain()
    assert counts == {"sent": 0, "retry": 0, "failed": 0}


async def test_unknown_channel_is_refused(db, org):
    with pytest.raises(ValueError):
        await enqueue(db, tenant_id=org.tenant.id, channel="sms", kind="x", payload={})


async def test_inbox_read_marks_skip_alarms(db, org, session_factory, billing, email):
    from worklog.core.enforcement.service import evaluate_user
    from worklog.core.notifications import service
    from conftest import TODAY

    for title in ("Timesheet Approved", "Timesheet Rejected"):
        await enqueue(db, tenant_id=org.tenant.id, channel="notify", kind="timesheet_status",
                      recipient_id=org.member.id, payload={"title": title, "category": "general"})
    await evaluate_user(db, org.tenant.id, org.member, TODAY)
    await db.commit()
    await OutboxDispatcher(session_factory, email=email, billing=billing).drain()

    inbox = await service.list_notifications(db, org.member_ctx)
    assert sorted(n.title for n in inbox) == ["Timesheet Approved", "Timesheet Rejected"]
    assert all(n.category != "alarm" for n in inbox)

    first = await service.mark_read(db, org.member_ctx, inbox[0].id)
    assert first.is_read is True
    assert await service.mark_all_read(db, org.member_ctx) == 1
    assert await service.list_notifications(db, org.member_ctx, unread_only=True) == []

    outbox = await service.list_outbox(db, org.owner_ctx, status="sent")
    assert len(outbox) == 2


async def _queue_approval_email(db, org, recipient_id=None):
    await enqueue(db, tenant_id=org.tenant.id, channel="email", kind="timesheet_approved",
                  recipient_id=recipient_id or org.member.id,
                  payload={"work_date": "2026-03-10", "duration_minutes": 120, "status": "approved"})
    await db.commit()


async def test_smtp_sender_mails_the_entry_owner(db, org, session_factory, billing, monkeypatch):
    sent = []

    async def fake_send(message, **kwargs):
        sent.append((message, kwargs))

    monkeypatch.setattr(transports.aiosmtplib, "send", fake_send)
    await _queue_approval_email(db, org)

    smtp = transports.SmtpEmailSender("smtp.acme.test", 2525, username="mailer", password="secret")
    counts = await OutboxDispatcher(session_factory, email=smtp, billing=billing).drain()
    assert counts == {"sent": 1, "retry": 0, "failed": 0}

    [(message, kwargs)] = sent
    assert message["To"] == "dev@acme.test"
    assert message["Subject"] == "Timesheet approved (2026-03-10)"
    assert "Minutes: 120" in message.get_payload()[0].get_payload()
    assert kwargs["hostname"] == "smtp.acme.test"
    assert kwargs["port"] == 2525


async def test_smtp_failure_is_retried(db, org, session_factory, billing, monkeypatch):
    async def refuse(message, **kwargs):
        raise transports.aiosmtplib.SMTPException("connection refused")

    monkeypatch.setattr(transports.aiosmtplib, "send", refuse)
    await _queue_approval_email(db, org)

    smtp = transports.SmtpEmailSender("smtp.acme.test")
    counts = await OutboxDispatcher(session_factory, email=smtp, billing=billing).drain()
    assert counts == {"sent": 0, "retry": 1, "failed": 0}


async def test_email_to_unknown_user_is_not_sent(db, org, session_factory, billing, email):
    import uuid
    await _queue_approval_email(db, org, recipient_id=uuid.uuid4())
    counts = await OutboxDispatcher(session_factory, email=email, billing=billing).drain()
    assert counts == {"sent": 0, "retry": 1, "failed": 0}
    assert email.sent == []


def test_smtp_is_used_once_configured(monkeypatch):
    settings = get_settings()
    assert isinstance(transports.default_email_sender(), transports.LoggingEmailSender)
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.acme.test")
    sender = transports.default_email_sender()
    assert isinstance(sender, transports.SmtpEmailSender)
    assert sender.host == "smtp.acme.test"
