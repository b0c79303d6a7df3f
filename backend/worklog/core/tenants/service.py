import uuid
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.tenants.models import Tenant


async def get_tenant(db: AsyncSession, tenant_id: uuid.UUID) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id, Tenant.is_deleted == False))
    return result.scalar_one_or_none()


async def list_active_tenants(db: AsyncSession) -> list[Tenant]:
    result = await db.execute(
        select(Tenant).where(Tenant.is_deleted == False, Tenant.status == "active")
    )
    return list(result.scalars().all())


def tenant_zone(tenant: Tenant | None) -> ZoneInfo:
    tz_name = getattr(tenant, "timezone", None) or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


async def get_tenant_tz(db: AsyncSession, tenant_id: uuid.UUID) -> ZoneInfo:
    return tenant_zone(await get_tenant(db, tenant_id))


async def tenant_today(db: AsyncSession, tenant_id: uuid.UUID, now: datetime | None = None) -> date:
    tz = await get_tenant_tz(db, tenant_id)
    return (now or datetime.now(timezone.utc)).astimezone(tz).date()
