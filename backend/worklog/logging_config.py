"""
Logging setup for the worklog service.

Plain text in development, one JSON object per line in production
(LOG_JSON=true). Request-scoped identifiers travel in context variables and
are stamped onto every record by the formatters.
"""
import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from worklog.settings import get_settings

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

_RESERVED = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName",
    "request_id", "tenant_id", "user_id",
}


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


def bind_request_context(
    request_id: str | None = None,
    tenant_id: uuid.UUID | str | None = None,
    user_id: uuid.UUID | str | None = None,
) -> None:
    if request_id is not None:
        request_id_var.set(request_id)
    if tenant_id is not None:
        tenant_id_var.set(str(tenant_id))
    if user_id is not None:
        user_id_var.set(str(user_id))


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, var in (("request_id", request_id_var), ("tenant_id", tenant_id_var), ("user_id", user_id_var)):
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_var.get() or "-"
        record.tenant_id = tenant_id_var.get() or "-"
        record.user_id = user_id_var.get() or "-"
        return super().format(record)


def configure_logging() -> None:
    settings = get_settings()
    root = logging.getLogger("worklog")
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.LOG_JSON:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextualFormatter(
            "%(asctime)s %(levelname)-7s [%(request_id)s %(tenant_id)s %(user_id)s] %(name)s: %(message)s"
        ))
    root.addHandler(handler)
    root.propagate = False

    # SQL echo is noisy and duplicates through the root logger
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
