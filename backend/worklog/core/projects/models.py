import uuid
from datetime import date
from sqlalchemy import Date, String, Text, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from worklog.db.base import Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin

SETTLED_STATUS = "completed"


class Project(Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin):
    """status: active | on_hold | completed. completed = settled, no new time."""
    __tablename__ = "projects"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_no: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    __table_args__ = (UniqueConstraint("tenant_id", "project_no", name="uq_project_tenant_no"),)


class Milestone(Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin):
    __tablename__ = "milestones"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class Task(Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin):
    """status: open | in_progress | done. Overdue open tasks raise task-delay alarms."""
    __tablename__ = "tasks"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="open")
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
