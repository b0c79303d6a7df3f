import uuid
from datetime import datetime
from pydantic import BaseModel, Field


class LockRequest(BaseModel):
    locked: bool


class BulkLockRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(..., min_length=1, max_length=500)
    locked: bool


class LockStateRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    full_name: str | None
    email: str
    is_timesheet_locked: bool
    timesheet_locked_at: datetime | None
    timesheet_locked_by: uuid.UUID | None
