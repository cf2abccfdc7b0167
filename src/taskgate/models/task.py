"""Task model - core unit of billable work."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskgate.models.enums import LogLevel, TaskStatus


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.DRAFT: {
        TaskStatus.PENDING,
        TaskStatus.APPROVAL_REQUIRED,
        TaskStatus.CANCELED,
    },
    TaskStatus.PENDING: {
        TaskStatus.PROCESSING,
        TaskStatus.APPROVAL_REQUIRED,
        TaskStatus.CANCELED,
    },
    TaskStatus.APPROVAL_REQUIRED: {TaskStatus.PENDING, TaskStatus.CANCELED},
    # No preemption: a running task can only finish.
    TaskStatus.PROCESSING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELED: set(),
}


class TaskError(BaseModel):
    """Error record attached to a failed task."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """Core task entity representing a unit of billable work."""

    # Identity
    task_id: UUID
    owner_id: str

    # Type and payload
    task_type: str
    title: str
    description: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[TaskError] = None

    # Billing and ordering
    credit_cost: int
    priority: int
    dependencies: list[UUID] = Field(default_factory=list)

    # Status
    status: TaskStatus = TaskStatus.PENDING

    # Pending external result (sub-state of processing)
    external_ref: Optional[str] = None
    next_poll_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        """Check if task is in a terminal state."""
        return self.status.is_terminal()

    def is_awaiting_external(self) -> bool:
        return self.status == TaskStatus.PROCESSING and self.external_ref is not None

    def can_transition_to(self, new_status: TaskStatus) -> bool:
        """Check if transition to new status is valid per state machine."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())


class TaskLogEntry(BaseModel):
    """Append-only log line owned by a task."""

    entry_id: UUID
    task_id: UUID
    level: LogLevel
    message: str
    created_at: datetime
