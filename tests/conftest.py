"""
Worklog test fixtures: a throwaway SQLite database per test, one tenant with
an owner, a project manager and a member, and a project with and without a PM.
"""
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./worklog-test.db")
os.environ.setdefault("APP_DEBUG", "false")
os.environ.setdefault("REVERSE_GEOCODE_URL", "")
os.environ.setdefault("BILLING_SYNC_URL", "")
os.environ.setdefault("SMTP_HOST", "")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from worklog.db.base import Base
from worklog.core.tenants.models import Tenant
from worklog.core.rbac.models import User, ProjectMember
from worklog.core.rbac.service import build_actor_context
from worklog.core.audit.models import AuditLog  # noqa
from worklog.core.projects.models import Project, Milestone, Task  # noqa
from worklog.core.timesheets.models import TimesheetEntry, ApprovalEvent  # noqa
from worklog.core.timer.models import ClockSession  # noqa
from worklog.core.notifications.models import Notification, OutboxMessage  # noqa

# Users join on Monday 2 March 2026; most tests run on Wednesday 11 March.
JOINED = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 11)
NOW = datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'worklog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def org(db):
    tenant = Tenant(name="Acme", slug="acme", timezone="UTC")
    db.add(tenant)
    await db.flush()

    def make_user(email: str, role: str, rate: str | None = None) -> User:
        return User(
            tenant_id=tenant.id,
            email=email,
            full_name=email.split("@")[0].title(),
            role=role,
            hourly_rate=Decimal(rate) if rate else None,
            created_at=JOINED,
        )

    owner = make_user("owner@acme.test", "owner")
    pm = make_user("pm@acme.test", "project_manager")
    member = make_user("dev@acme.test", "member", "50.00")
    db.add_all([owner, pm, member])
    await db.flush()

    project = Project(tenant_id=tenant.id, project_no="P-001", name="Website", currency="EUR")
    solo_project = Project(tenant_id=tenant.id, project_no="P-002", name="Internal", currency="EUR")
    db.add_all([project, solo_project])
    await db.flush()

    task = Task(tenant_id=tenant.id, project_id=project.id, title="Checkout flow", assigned_to=member.id)
    solo_task = Task(tenant_id=tenant.id, project_id=solo_project.id, title="Housekeeping")
    db.add_all([
        task,
        solo_task,
        ProjectMember(tenant_id=tenant.id, project_id=project.id, user_id=pm.id, role="project_manager"),
        ProjectMember(tenant_id=tenant.id, project_id=project.id, user_id=member.id, role="member"),
        ProjectMember(tenant_id=tenant.id, project_id=solo_project.id, user_id=member.id, role="member"),
    ])
    await db.commit()

    return SimpleNamespace(
        tenant=tenant,
        owner=owner,
        pm=pm,
        member=member,
        project=project,
        task=task,
        solo_project=solo_project,
        solo_task=solo_task,
        owner_ctx=await build_actor_context(db, owner),
        pm_ctx=await build_actor_context(db, pm),
        member_ctx=await build_actor_context(db, member),
    )


@pytest.fixture
def make_entry(db, org):
    async def _make(ctx=None, *, work_date=TODAY, minutes=120, project=None, task=None, **fields):
        from worklog.core.timesheets.schemas import EntryCreate
        from worklog.core.timesheets.service import create_entry
        data = EntryCreate(
            work_date=work_date,
            project_id=(project or org.project).id,
            task_id=(task or org.task).id,
            duration_minutes=minutes,
            **fields,
        )
        return await create_entry(db, ctx or org.member_ctx, data, today=TODAY)
    return _make


class RecordingBillingSync:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple] = []

    async def sync_billable(self, entry_id, payload):
        if self.fail:
            raise RuntimeError("billing endpoint unavailable")
        self.calls.append((entry_id, payload))


class RecordingEmailSender:
    def __init__(self):
        self.sent: list[tuple] = []

    async def send(self, *, to_email, template, payload):
        self.sent.append((to_email, template))


@pytest.fixture
def billing():
    return RecordingBillingSync()


@pytest.fixture
def email():
    return RecordingEmailSender()
