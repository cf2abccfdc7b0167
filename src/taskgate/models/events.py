"""Lifecycle event and notification models."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from taskgate.models.enums import TaskStatus


class LifecycleEvent(BaseModel):
    """A status transition published for external fan-out."""

    task_id: UUID
    old_status: Optional[TaskStatus]
    new_status: TaskStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class Notification(BaseModel):
    """In-app feed item rendered from a lifecycle event."""

    notification_id: UUID
    account_id: str
    template: str
    subject: str
    body: str
    task_id: Optional[UUID] = None
    data: dict[str, Any] = Field(default_factory=dict)
    read_at: Optional[datetime] = None
    created_at: datetime
