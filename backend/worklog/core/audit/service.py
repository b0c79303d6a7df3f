import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware

from worklog.core.audit.models import AuditLog
from worklog.logging_config import bind_request_context, generate_request_id, request_id_var

logger = logging.getLogger(__name__)

client_ip_var: ContextVar[str | None] = ContextVar("client_ip", default=None)


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class AuditMiddleware(BaseHTTPMiddleware):
    """Tags every request with a request id and client IP for logs and audit rows."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or generate_request_id()
        bind_request_context(request_id=request_id)
        client_ip_var.set(client_ip(request))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


async def audit(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID | None,
    user_id: uuid.UUID | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    detail: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Append an audit row in the caller's transaction; it commits or rolls back with the change."""
    entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        detail=detail,
        ip_address=ip_address or client_ip_var.get(),
        request_id=request_id_var.get() or None,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()
    logger.info("%s %s %s", action, resource_type, resource_id or "-")
    return entry
