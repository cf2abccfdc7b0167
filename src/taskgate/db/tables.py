"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from taskgate.db.base import Base
from taskgate.models.enums import LedgerEntryKind, LogLevel, TaskStatus


class TaskTable(Base):
    """Tasks table - billable work units."""

    __tablename__ = "tasks"

    task_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Type and payload
    task_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    inputs: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    outputs: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Billing and ordering
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)

    # Dependency edges, stored as task id strings
    dependencies: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.PENDING
    )

    # Pending external result
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_poll_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Index for scheduler snapshots
        Index("idx_tasks_runnable", "status", "priority", "created_at"),
        # Index for listing by owner
        Index("idx_tasks_owner", "owner_id", "created_at"),
        # Index for external result polling
        Index("idx_tasks_poll", "status", "next_poll_at"),
    )


class TaskLogTable(Base):
    """Task log table - append-only history per task."""

    __tablename__ = "task_logs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    task_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[LogLevel] = mapped_column(Enum(LogLevel, name="log_level"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_task_logs_task", "task_id", "seq"),)


class CreditLedgerTable(Base):
    """Credit ledger table - append-only account movements."""

    __tablename__ = "credit_ledger"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[LedgerEntryKind] = mapped_column(
        Enum(LedgerEntryKind, name="ledger_entry_kind"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_task_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # One reserve, one debit and one refund per task at most
        UniqueConstraint("reference_task_id", "kind", name="uq_ledger_reference_kind"),
        Index("idx_ledger_account", "account_id", "seq"),
    )


class NotificationTable(Base):
    """Notifications table - in-app feed items."""

    __tablename__ = "notifications"

    notification_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_notifications_account", "account_id", "created_at"),)


class NotificationPreferenceTable(Base):
    """Per-account opt-outs, one row per template the account has set."""

    __tablename__ = "notification_preferences"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    template: Mapped[str] = mapped_column(String(100), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
