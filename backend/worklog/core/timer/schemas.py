import uuid
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Literal

from worklog.core.timesheets.schemas import VALID_WORK_TYPES, EntryRead


class LocationReport(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(None, ge=0)


class ClockStart(BaseModel):
    project_id: uuid.UUID | None = None
    task_id: uuid.UUID | None = None
    milestone_id: uuid.UUID | None = None
    story_id: uuid.UUID | None = None
    sprint_id: uuid.UUID | None = None
    work_type: VALID_WORK_TYPES = "development"
    is_billable: bool = True
    description: str | None = None
    remark: str | None = None
    location: LocationReport | None = None


class ClockStop(BaseModel):
    description: str | None = None
    remark: str | None = None
    location: LocationReport | None = None


class ClockSessionRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    owner_id: uuid.UUID
    project_id: uuid.UUID | None
    task_id: uuid.UUID | None
    milestone_id: uuid.UUID | None
    work_type: str
    is_billable: bool
    description: str | None
    remark: str | None
    started_at: datetime
    stopped_at: datetime | None
    is_paused: bool
    paused_at: datetime | None
    accumulated_pause_seconds: int
    start_location: dict | None
    stop_location: dict | None
    total_minutes: int | None
    resulting_entry_id: uuid.UUID | None
    discard_reason: str | None = None


class ActiveSessionRead(BaseModel):
    session: ClockSessionRead | None
    state: Literal["stopped", "running", "paused"]
    elapsed_seconds: int = 0
    is_long_running: bool = False


class ClockStopResult(BaseModel):
    session: ClockSessionRead
    entry: EntryRead | None = None
