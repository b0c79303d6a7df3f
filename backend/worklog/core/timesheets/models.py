import uuid
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, DateTime, Date, String, Text,
    ForeignKey, Index, Integer, Numeric, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from worklog.db.base import Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin

WORK_TYPES = ("development", "qa", "rework", "bug", "meeting", "support", "idle", "overtime", "other")
REMARK_REQUIRED_WORK_TYPES = frozenset({"rework", "bug", "overtime"})

ENTRY_STATUSES = ("draft", "submitted", "pending_pm", "pending_admin", "approved", "rejected")
TERMINAL_STATUSES = frozenset({"approved", "rejected"})
REVIEW_STATUSES = frozenset({"submitted", "pending_pm", "pending_admin"})


class TimesheetEntry(Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin):
    """
    One logged unit of work.
    status: draft → pending_pm → pending_admin → approved | rejected
    'submitted' is the legacy flat review state, routed by actor role.
    approved ⇒ is_locked (enforced here and by ck_entry_approved_locked).
    Owner may mutate only while draft. Transitions use row lock + status CAS.
    """
    __tablename__ = "timesheet_entries"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    story_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    sprint_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    work_type: Mapped[str] = mapped_column(String(50), nullable=False, default="development")
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="draft")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_under_alarm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # manual | clock
    entry_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_modified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_entry_duration_positive"),
        CheckConstraint("status <> 'approved' OR is_locked", name="ck_entry_approved_locked"),
        Index("ix_entry_owner_date", "tenant_id", "owner_id", "work_date"),
        Index("ix_entry_tenant_status", "tenant_id", "status"),
    )


class ApprovalEvent(Base, TenantScopedMixin):
    """
    Append-only record of one lifecycle action on an entry.
    actor_role: self | project_manager | admin
    action: submit | approve | reject
    Never updated or deleted; ordered by acted_at, then seq.
    """
    __tablename__ = "approval_events"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entry_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("timesheet_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    resulting_status: Mapped[str] = mapped_column(String(50), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    adjustment: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    acted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    __table_args__ = (
        Index("uq_approval_event_seq", "entry_id", "seq", unique=True),
    )
