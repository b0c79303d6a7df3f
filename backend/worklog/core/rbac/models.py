import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from worklog.db.base import Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin

TENANT_ROLES = ("member", "project_manager", "owner", "admin")


class User(Base, TimestampMixin, SoftDeleteMixin, TenantScopedMixin):
    """
    role: member | project_manager | owner | admin
    is_timesheet_locked: audit lock, set by owner/admin only.
    violation_count: raised gap alarms since the last lockout resolution.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="member")
    is_superadmin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    # Audit lock
    is_timesheet_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    timesheet_locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timesheet_locked_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    # Enforcement
    violation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),)


class ProjectMember(Base, TimestampMixin, TenantScopedMixin):
    """role: member | project_manager. project_manager rows drive pending_pm routing."""
    __tablename__ = "project_members"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="member")

    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_member"),)
