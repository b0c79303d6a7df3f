import uuid
from typing import Annotated, AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.auth.security import read_access_token
from worklog.core.rbac.context import ActorContext
from worklog.core.rbac.service import build_actor_context, get_user
from worklog.db.session import AsyncSessionLocal, set_rls_context
from worklog.logging_config import bind_request_context

bearer = HTTPBearer(auto_error=False)


def get_session_factory():
    """Factory for work that must commit independently of the request transaction."""
    return AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer)],
    x_tenant_id: Annotated[uuid.UUID | None, Header()] = None,
    db: AsyncSession = Depends(get_db),
) -> ActorContext:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        claims = read_access_token(credentials.credentials)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user_id, tenant_id = claims.user_id, claims.tenant_id

    user = await get_user(db, user_id)
    if not user or user.status != "active" or user.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    # Only a superadmin may act inside another tenant
    if x_tenant_id and x_tenant_id != tenant_id:
        if not user.is_superadmin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot switch tenant")
        tenant_id = x_tenant_id

    await set_rls_context(db, tenant_id, user_id)
    bind_request_context(tenant_id=tenant_id, user_id=user_id)
    return await build_actor_context(db, user, tenant_id)


async def require_admin(
    ctx: ActorContext = Depends(get_current_user),
) -> ActorContext:
    if not ctx.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner or admin required")
    return ctx
