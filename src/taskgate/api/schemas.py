"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskgate.models import CreditLedgerEntry, Notification, Task, TaskLogEntry


# ============================================================================
# Shared schemas
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class ErrorResponse(BaseModel):
    """Body of every domain error response."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class TaskTypeResponse(BaseModel):
    """Registered task type."""

    task_type: str
    name: str
    description: str
    credit_cost: int
    requires_approval: bool


# ============================================================================
# Task schemas
# ============================================================================


class CreateTaskRequest(BaseModel):
    """Create task request."""

    owner_id: str = Field(..., min_length=1, description="Account that owns and pays for the task")
    task_type: str = Field(..., description="Registered task type")
    title: str = Field(..., description="Human-readable title")
    description: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict, description="Processor inputs")
    priority: Optional[int] = Field(None, description="Task priority (higher = more urgent)")
    dependencies: list[UUID] = Field(default_factory=list)
    draft: bool = Field(False, description="Create as draft instead of submitting")


class TaskResponse(BaseModel):
    """Task response."""

    task_id: UUID
    owner_id: str
    task_type: str
    title: str
    description: str
    inputs: dict[str, Any]
    outputs: dict[str, Any]
    error: Optional[dict[str, Any]] = None
    credit_cost: int
    priority: int
    dependencies: list[UUID]
    status: str
    external_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            task_id=task.task_id,
            owner_id=task.owner_id,
            task_type=task.task_type,
            title=task.title,
            description=task.description,
            inputs=task.inputs,
            outputs=task.outputs,
            error=task.error.model_dump() if task.error else None,
            credit_cost=task.credit_cost,
            priority=task.priority,
            dependencies=task.dependencies,
            status=task.status.value,
            external_ref=task.external_ref,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            finished_at=task.finished_at,
        )


class ListTasksResponse(BaseModel):
    """List tasks response."""

    tasks: list[TaskResponse]
    next_cursor: Optional[str] = None


class TaskLogResponse(BaseModel):
    """Task log lines, oldest first."""

    task_id: UUID
    entries: list[TaskLogEntry]


class ReasonRequest(BaseModel):
    """Optional free-text reason for cancel and request-approval."""

    reason: Optional[str] = None


class UpdatePriorityRequest(BaseModel):
    priority: int


class SetDependenciesRequest(BaseModel):
    dependencies: list[UUID] = Field(default_factory=list)


class ReadinessResponse(BaseModel):
    """Whether every dependency of a task has completed."""

    task_id: UUID
    ready: bool
    blocking: list[UUID]


# ============================================================================
# Credit schemas
# ============================================================================


class CreditsResponse(BaseModel):
    """Account credit summary."""

    account_id: str
    balance: int
    held: int
    available: int


class TopupRequest(BaseModel):
    amount: int = Field(..., ge=1)
    note: Optional[str] = None


class LedgerEntriesResponse(BaseModel):
    account_id: str
    entries: list[CreditLedgerEntry]


# ============================================================================
# Notification schemas
# ============================================================================


class NotificationsResponse(BaseModel):
    account_id: str
    notifications: list[Notification]


class MarkReadRequest(BaseModel):
    """Notification ids to mark read; omit to mark everything read."""

    notification_ids: Optional[list[UUID]] = None


class MarkReadResponse(BaseModel):
    marked: int


class NotificationPreferencesResponse(BaseModel):
    account_id: str
    preferences: dict[str, bool]


class UpdatePreferencesRequest(BaseModel):
    """Templates to opt in (true) or out of (false); others are left as they are."""

    preferences: dict[str, bool]
