import uuid
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.rbac.context import ActorContext, ADMIN_ROLES
from worklog.core.rbac.models import User, ProjectMember


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id, User.is_deleted == False))
    return result.scalar_one_or_none()


async def get_tenant_user(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> User | None:
    q = select(User).where(
        User.id == user_id,
        User.tenant_id == tenant_id,
        User.is_deleted == False,
    )
    if for_update:
        q = q.with_for_update()
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def managed_project_ids(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID) -> frozenset[uuid.UUID]:
    result = await db.execute(
        select(ProjectMember.project_id).where(
            ProjectMember.tenant_id == tenant_id,
            ProjectMember.user_id == user_id,
            ProjectMember.role == "project_manager",
        )
    )
    return frozenset(result.scalars().all())


async def build_actor_context(db: AsyncSession, user: User, tenant_id: uuid.UUID | None = None) -> ActorContext:
    effective_tenant = tenant_id or user.tenant_id
    return ActorContext(
        user_id=user.id,
        tenant_id=effective_tenant,
        role=user.role,
        is_superadmin=user.is_superadmin,
        managed_project_ids=await managed_project_ids(db, effective_tenant, user.id),
    )


async def project_manager_ids(db: AsyncSession, tenant_id: uuid.UUID, project_id: uuid.UUID) -> list[uuid.UUID]:
    result = await db.execute(
        select(ProjectMember.user_id)
        .join(User, User.id == ProjectMember.user_id)
        .where(
            ProjectMember.tenant_id == tenant_id,
            ProjectMember.project_id == project_id,
            ProjectMember.role == "project_manager",
            User.is_deleted == False,
            User.status == "active",
        )
        .order_by(ProjectMember.created_at)
    )
    return list(result.scalars().all())


async def tenant_owner_ids(db: AsyncSession, tenant_id: uuid.UUID) -> list[uuid.UUID]:
    result = await db.execute(
        select(User.id).where(
            User.tenant_id == tenant_id,
            User.role.in_(ADMIN_ROLES),
            User.is_deleted == False,
            User.status == "active",
        )
    )
    return list(result.scalars().all())


async def manager_ids_for_user(db: AsyncSession, tenant_id: uuid.UUID, user_id: uuid.UUID) -> list[uuid.UUID]:
    """PMs of every project the user is a member of."""
    member_projects = (
        select(ProjectMember.project_id)
        .where(ProjectMember.tenant_id == tenant_id, ProjectMember.user_id == user_id)
        .scalar_subquery()
    )
    result = await db.execute(
        select(ProjectMember.user_id).distinct().where(
            ProjectMember.tenant_id == tenant_id,
            ProjectMember.project_id.in_(member_projects),
            ProjectMember.role == "project_manager",
            ProjectMember.user_id != user_id,
        )
    )
    return list(result.scalars().all())


async def can_review_user(db: AsyncSession, ctx: ActorContext, user_id: uuid.UUID) -> bool:
    if ctx.is_admin:
        return True
    if not ctx.managed_project_ids:
        return False
    result = await db.execute(
        select(ProjectMember.id).where(
            ProjectMember.tenant_id == ctx.tenant_id,
            ProjectMember.user_id == user_id,
            ProjectMember.project_id.in_(ctx.managed_project_ids),
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_enforcement_subjects(db: AsyncSession, tenant_id: uuid.UUID) -> list[User]:
    """Individual contributors only; managers and admins are never enforced."""
    result = await db.execute(
        select(User).where(
            User.tenant_id == tenant_id,
            User.role == "member",
            User.is_superadmin == False,
            User.is_deleted == False,
            User.status == "active",
        )
    )
    return list(result.scalars().all())
