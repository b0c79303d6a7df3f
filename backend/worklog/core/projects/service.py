import uuid
from datetime import date
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import BlockedByLock, NotFound
from worklog.core.projects.models import Project, Milestone, Task, SETTLED_STATUS


async def get_project(db: AsyncSession, tenant_id: uuid.UUID, project_id: uuid.UUID) -> Project | None:
    result = await db.execute(
        select(Project).where(
            Project.id == project_id,
            Project.tenant_id == tenant_id,
            Project.is_deleted == False,
        )
    )
    return result.scalar_one_or_none()


async def get_milestone(db: AsyncSession, tenant_id: uuid.UUID, milestone_id: uuid.UUID) -> Milestone | None:
    result = await db.execute(
        select(Milestone).where(
            Milestone.id == milestone_id,
            Milestone.tenant_id == tenant_id,
            Milestone.is_deleted == False,
        )
    )
    return result.scalar_one_or_none()


async def get_task(db: AsyncSession, tenant_id: uuid.UUID, task_id: uuid.UUID) -> Task | None:
    result = await db.execute(
        select(Task).where(
            Task.id == task_id,
            Task.tenant_id == tenant_id,
            Task.is_deleted == False,
        )
    )
    return result.scalar_one_or_none()


async def resolve_work_context(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    project_id: uuid.UUID,
    task_id: uuid.UUID,
    milestone_id: uuid.UUID | None = None,
    allow_settled: bool = False,
) -> tuple[Project, Task, Milestone | None]:
    """
    Load project/task/milestone for logging time and refuse settled phases.
    A task belongs to exactly one project; its milestone is used when the
    caller does not name one. allow_settled is for closing a timer that was
    started before the phase settled; submitting that entry is still refused.
    """
    project = await get_project(db, tenant_id, project_id)
    if not project:
        raise NotFound("Project", project_id)
    task = await get_task(db, tenant_id, task_id)
    if not task or task.project_id != project.id:
        raise NotFound("Task", task_id)

    if project.status == SETTLED_STATUS and not allow_settled:
        raise BlockedByLock(
            f"Project '{project.name}' is completed; time can no longer be logged against it",
            {"project_id": str(project.id)},
        )

    milestone = None
    ms_id = milestone_id or task.milestone_id
    if ms_id:
        milestone = await get_milestone(db, tenant_id, ms_id)
        if not milestone or milestone.project_id != project.id:
            raise NotFound("Milestone", ms_id)
        if milestone.status == SETTLED_STATUS and not allow_settled:
            raise BlockedByLock(
                f"Milestone '{milestone.name}' is completed; time can no longer be logged against it",
                {"milestone_id": str(milestone.id)},
            )
    return project, task, milestone


async def list_overdue_tasks(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    today: date,
) -> list[Task]:
    result = await db.execute(
        select(Task).where(
            Task.tenant_id == tenant_id,
            Task.assigned_to == user_id,
            Task.is_deleted == False,
            Task.status != "done",
            Task.due_date.is_not(None),
            Task.due_date < today,
        ).order_by(Task.due_date)
    )
    return list(result.scalars().all())
