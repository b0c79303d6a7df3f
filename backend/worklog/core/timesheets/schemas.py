import uuid
from datetime import datetime, date
from decimal import Decimal
from pydantic import BaseModel, Field, model_validator
from typing import Literal

VALID_WORK_TYPES = Literal["development", "qa", "rework", "bug", "meeting", "support", "idle", "overtime", "other"]
VALID_ENTRY_STATUSES = Literal["draft", "submitted", "pending_pm", "pending_admin", "approved", "rejected"]


# ── Entries ───────────────────────────────────────────────────────────────────

class EntryCreate(BaseModel):
    work_date: date
    project_id: uuid.UUID
    task_id: uuid.UUID
    story_id: uuid.UUID | None = None
    sprint_id: uuid.UUID | None = None
    milestone_id: uuid.UUID | None = None
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    work_type: VALID_WORK_TYPES = "development"
    is_billable: bool = True
    description: str | None = None
    remark: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    owner_id: uuid.UUID | None = None  # admin logging on behalf of a user

    @model_validator(mode="after")
    def validate_times(self) -> "EntryCreate":
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class EntryUpdate(BaseModel):
    work_date: date | None = None
    project_id: uuid.UUID | None = None
    task_id: uuid.UUID | None = None
    milestone_id: uuid.UUID | None = None
    duration_minutes: int | None = Field(None, gt=0, le=24 * 60)
    work_type: VALID_WORK_TYPES | None = None
    is_billable: bool | None = None
    description: str | None = None
    remark: str | None = None


class EntryRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    tenant_id: uuid.UUID
    owner_id: uuid.UUID
    work_date: date
    project_id: uuid.UUID
    task_id: uuid.UUID
    story_id: uuid.UUID | None
    sprint_id: uuid.UUID | None
    milestone_id: uuid.UUID | None
    duration_minutes: int
    work_type: str
    is_billable: bool
    hourly_rate: Decimal | None
    currency: str | None
    description: str | None
    remark: str | None
    status: str
    rejection_reason: str | None
    is_locked: bool
    created_under_alarm: bool
    entry_type: str
    start_time: datetime | None
    end_time: datetime | None
    location: dict | None
    submitted_at: datetime | None
    last_modified_by: uuid.UUID | None
    last_modified_at: datetime | None
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    created_at: datetime


# ── Review ────────────────────────────────────────────────────────────────────

class SubmitRequest(BaseModel):
    entry_ids: list[uuid.UUID] = Field(..., min_length=1, max_length=200)


class ReviewAdjustment(BaseModel):
    duration_minutes: int | None = Field(None, gt=0, le=24 * 60)
    is_billable: bool | None = None

    @model_validator(mode="after")
    def not_empty(self) -> "ReviewAdjustment":
        if self.duration_minutes is None and self.is_billable is None:
            raise ValueError("adjustment must change duration_minutes or is_billable")
        return self


class ApproveRequest(BaseModel):
    comment: str | None = None
    adjustment: ReviewAdjustment | None = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ApprovalEventRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    entry_id: uuid.UUID
    seq: int
    actor_id: uuid.UUID
    actor_role: str
    action: str
    from_status: str
    resulting_status: str
    comment: str | None
    adjustment: dict | None
    acted_at: datetime
