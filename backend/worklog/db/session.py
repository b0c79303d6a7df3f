import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from worklog.settings import get_settings

settings = get_settings()


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.APP_DEBUG and settings.APP_ENV == "development",
    **_engine_kwargs(settings.DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
)


async def set_rls_context(
    session: AsyncSession,
    tenant_id: uuid.UUID | None,
    user_id: uuid.UUID | None,
) -> None:
    if session.bind.dialect.name != "postgresql":
        return
    t = str(tenant_id) if tenant_id else ""
    u = str(user_id) if user_id else ""
    await session.execute(text("SELECT set_config('app.tenant_id', :t, true)"), {"t": t})
    await session.execute(text("SELECT set_config('app.user_id', :u, true)"), {"u": u})
