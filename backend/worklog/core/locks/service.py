import logging
import uuid
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.errors import AuditLocked, NotAuthorized, NotFound, ValidationFailed
from worklog.core.rbac.context import ActorContext
from worklog.core.rbac.models import User
from worklog.core.rbac.service import get_tenant_user
from worklog.db.base import utcnow

logger = logging.getLogger(__name__)


async def assert_can_mutate(db: AsyncSession, ctx: ActorContext, owner_id: uuid.UUID) -> None:
    """Audit-locked users cannot touch their own entries; owner/admin may correct them."""
    if ctx.is_admin:
        return
    owner = await get_tenant_user(db, ctx.tenant_id, owner_id)
    if owner and owner.is_timesheet_locked:
        raise AuditLocked(
            "Timesheets are locked for audit",
            {
                "user_id": str(owner_id),
                "next_step": "Ask a tenant owner or admin to lift the audit lock or make the correction",
            },
        )


async def set_timesheet_lock(
    db: AsyncSession,
    ctx: ActorContext,
    user_ids: list[uuid.UUID],
    locked: bool,
    now: datetime | None = None,
) -> list[User]:
    """Single and bulk lock share this path. Unchanged users are skipped."""
    if not ctx.is_admin:
        raise NotAuthorized("Only a tenant owner or admin can change audit locks")
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        raise ValidationFailed("At least one user is required", field="user_ids")

    result = await db.execute(
        select(User)
        .where(User.tenant_id == ctx.tenant_id, User.id.in_(ids), User.is_deleted == False)
        .order_by(User.id)
        .with_for_update()
    )
    users = {u.id: u for u in result.scalars().all()}
    missing = [i for i in ids if i not in users]
    if missing:
        raise NotFound("User", ", ".join(str(m) for m in missing))

    now = now or utcnow()
    changed = []
    for user_id in ids:
        user = users[user_id]
        if user.is_timesheet_locked == locked:
            continue
        user.is_timesheet_locked = locked
        user.timesheet_locked_at = now if locked else None
        user.timesheet_locked_by = ctx.user_id if locked else None
        changed.append(user)
    await db.flush()

    from worklog.core.audit.service import audit
    from worklog.core.notifications import fanout
    for user in changed:
        await audit(db, tenant_id=ctx.tenant_id, user_id=ctx.user_id,
            action="timesheet.audit_lock" if locked else "timesheet.audit_unlock",
            resource_type="user", resource_id=str(user.id),
            detail={"locked": locked, "bulk": len(ids) > 1},
        )
        await fanout.audit_lock_changed(db, ctx, user.id, locked)
    logger.info("audit lock %s for %d of %d users", "set" if locked else "cleared", len(changed), len(ids))
    return [users[i] for i in ids]


async def list_locked_users(db: AsyncSession, ctx: ActorContext) -> list[User]:
    if not ctx.is_reviewer:
        raise NotAuthorized("Only reviewers can list audit-locked users")
    result = await db.execute(
        select(User).where(
            User.tenant_id == ctx.tenant_id,
            User.is_timesheet_locked == True,
            User.is_deleted == False,
        ).order_by(User.full_name)
    )
    return list(result.scalars().all())
