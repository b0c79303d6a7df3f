"""
Domain errors for the timesheet lifecycle.

Every error is an HTTPException so services can raise it directly and the
API renders it as {"code", "message", ...details}. Callers outside HTTP
(the sweeper, tests) catch the concrete class.
"""
from typing import Any

from fastapi import HTTPException


class WorklogError(HTTPException):
    status_code = 400
    code = "WORKLOG_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(status_code=self.status_code, detail=self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ── State ─────────────────────────────────────────────────────────────────────

class InvalidTransition(WorklogError):
    status_code = 409
    code = "INVALID_TRANSITION"


class AlarmAlreadyResolved(InvalidTransition):
    code = "ALARM_ALREADY_RESOLVED"


class SessionAlreadyActive(InvalidTransition):
    code = "SESSION_ALREADY_ACTIVE"


# ── Locks and gates ───────────────────────────────────────────────────────────

class EntryLocked(WorklogError):
    status_code = 423
    code = "ENTRY_LOCKED"


class AuditLocked(WorklogError):
    status_code = 423
    code = "AUDIT_LOCKED"


class BlockedByAlarm(WorklogError):
    status_code = 423
    code = "BLOCKED_BY_ALARM"


class BlockedByLock(WorklogError):
    """Project or milestone is settled (completed)."""
    status_code = 423
    code = "BLOCKED_BY_LOCK"


# ── Lookup ────────────────────────────────────────────────────────────────────

class NotFound(WorklogError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            {"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class EntryNotFound(NotFound):
    code = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: Any):
        super().__init__("Timesheet entry", entry_id)


# ── Input and authorization ───────────────────────────────────────────────────

class IncompleteSession(WorklogError):
    status_code = 422
    code = "INCOMPLETE_SESSION"


class ValidationFailed(WorklogError):
    status_code = 422
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, {"field": field} if field else None)


class NotAuthorized(WorklogError):
    status_code = 403
    code = "NOT_AUTHORIZED"
