import uuid
from datetime import datetime
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column
from worklog.db.base import Base, TimestampMixin, TenantScopedMixin


class ClockSession(Base, TimestampMixin, TenantScopedMixin):
    """
    One timer run. Stopped → Running ⇄ Paused → Stopped(closed)
    At most one open session (stopped_at IS NULL) per owner: uq_clock_session_open.
    Elapsed time is always rebuilt from started_at, paused_at and
    accumulated_pause_seconds, never from a client counter.
    """
    __tablename__ = "clock_sessions"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    story_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    sprint_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    work_type: Mapped[str] = mapped_column(String(50), nullable=False, default="development")
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accumulated_pause_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_location: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    stop_location: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    total_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resulting_entry_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("timesheet_entries.id", ondelete="SET NULL"), nullable=True)
    # Set when the session closed without producing an entry
    discard_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    __table_args__ = (
        Index(
            "uq_clock_session_open", "owner_id",
            unique=True,
            postgresql_where=text("stopped_at IS NULL"),
            sqlite_where=text("stopped_at IS NULL"),
        ),
    )
