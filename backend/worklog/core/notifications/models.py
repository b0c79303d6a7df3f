import uuid
from datetime import datetime, date
from sqlalchemy import (
    JSON, Boolean, DateTime, Date, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from worklog.db.base import Base, TimestampMixin, TenantScopedMixin, utcnow

ALARM_KINDS = ("missing-entry", "incomplete-day", "task-delay", "lockout")
GAP_ALARM_KINDS = ("missing-entry", "incomplete-day")
ALARM_OPEN = "OPEN"
ALARM_APPEALED = "APPEALED"
ALARM_RESOLVED = "RESOLVED"
ACTIVE_ALARM_STATUSES = (ALARM_OPEN, ALARM_APPEALED)


class Notification(Base, TimestampMixin, TenantScopedMixin):
    """
    In-app notification. category: general | alert | alarm
    Alarms (category=alarm) carry the enforcement state:
    status: OPEN → APPEALED → RESOLVED, or OPEN → RESOLVED
    dedupe_key makes detection idempotent (one alarm per user/kind/date or task).
    """
    __tablename__ = "notifications"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="general")
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Alarm fields
    alarm_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    alarm_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    appeal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    appealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    __table_args__ = (
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_notification_dedupe"),
        Index("ix_notification_alarm_status", "tenant_id", "recipient_id", "category", "status"),
    )


class OutboxMessage(Base, TimestampMixin, TenantScopedMixin):
    """
    Side effect queued inside a business transaction.
    channel: notify | email | billing
    status: pending → sent | failed (after OUTBOX_MAX_ATTEMPTS)
    """
    __tablename__ = "outbox_messages"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    __table_args__ = (
        Index("ix_outbox_pending", "status", "available_at"),
    )
