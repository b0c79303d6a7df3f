import uuid
from datetime import datetime, date
from pydantic import BaseModel, Field
from typing import Literal


class AlarmRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    recipient_id: uuid.UUID
    alarm_kind: str | None
    severity: str | None
    alarm_date: date | None
    status: str | None
    title: str
    message: str | None
    entity_type: str | None
    entity_id: str | None
    appeal_reason: str | None
    appealed_at: datetime | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    resolution_note: str | None
    created_at: datetime


class AppealRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    approve: bool = True
    note: str | None = None


class AlarmSummary(BaseModel):
    alarm_id: uuid.UUID
    kind: str | None
    status: str | None
    severity: str | None
    alarm_date: date | None
    title: str
    next_step: str


class GateStatusRead(BaseModel):
    user_id: uuid.UUID
    timer_blocked: bool
    is_timesheet_locked: bool
    violation_count: int
    alarms: list[AlarmSummary]


class SweepResult(BaseModel):
    raised: int


AlarmStatusFilter = Literal["OPEN", "APPEALED", "RESOLVED"]
