"""In-app notification feed fed by lifecycle events."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskgate.db.repositories import NotificationPreferenceRepository, NotificationRepository
from taskgate.engine.errors import ValidationError
from taskgate.models import LifecycleEvent, Notification, TaskStatus
from taskgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

_VARIABLE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class Template:
    name: str
    subject: str
    body: str


TEMPLATES = {
    "task_created": Template(
        "Task Created",
        "New Task Created: {{task_title}}",
        'A new task "{{task_title}}" has been created. Task ID: {{task_id}}',
    ),
    "task_waiting_approval": Template(
        "Task Waiting for Approval",
        "Task Waiting for Approval: {{task_title}}",
        'Task "{{task_title}}" is waiting for your approval. You can approve it here: {{approval_url}}',
    ),
    "task_approved": Template(
        "Task Approved",
        "Task Approved: {{task_title}}",
        'Your task "{{task_title}}" has been approved and is now being processed.',
    ),
    "task_completed": Template(
        "Task Completed",
        "Task Completed: {{task_title}}",
        'Your task "{{task_title}}" has been completed successfully. View the results: {{task_url}}',
    ),
    "task_failed": Template(
        "Task Failed",
        "Task Failed: {{task_title}}",
        'Your task "{{task_title}}" has failed. Error: {{error_message}}',
    ),
    "credits_low": Template(
        "Credits Low",
        "Low Credits Alert",
        "Your account is running low on credits. Current balance: {{credits_balance}}. "
        "Purchase more credits to continue using the platform.",
    ),
    "api_error": Template(
        "API Error",
        "API Error Detected",
        "An error occurred with the {{api_name}} API. Error: {{error_message}}",
    ),
}

DEFAULT_ERROR_MESSAGE = "An unknown error occurred."

# Failure codes raised by external service calls rather than by processors.
SERVICE_ERROR_CODES = frozenset(
    {"service_error", "service_unavailable", "api_error", "invalid_response"}
)


def render(text: str, data: dict[str, Any]) -> str:
    """Replace {{name}} placeholders; unknown names render empty."""
    return _VARIABLE_RE.sub(lambda match: str(data.get(match.group(1), "")), text)


def templates_for(event: LifecycleEvent, low_credit_threshold: int) -> list[str]:
    """Template names a lifecycle event should raise, in order."""
    old, new = event.old_status, event.new_status
    names = []
    if old is None:
        names.append("task_created")
    if new == TaskStatus.APPROVAL_REQUIRED:
        names.append("task_waiting_approval")
    elif new == TaskStatus.PENDING and old == TaskStatus.APPROVAL_REQUIRED:
        names.append("task_approved")
    elif new == TaskStatus.COMPLETED:
        names.append("task_completed")
        balance = event.payload.get("credits_balance")
        if balance is not None and balance < low_credit_threshold:
            names.append("credits_low")
    elif new == TaskStatus.FAILED:
        names.append("task_failed")
        if event.payload.get("error_code") in SERVICE_ERROR_CODES:
            names.append("api_error")
    return names


class NotificationFeed:
    """Bus subscriber that stores rendered notifications per account."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        low_credit_threshold: int = 10,
    ):
        self.session_factory = session_factory
        self.low_credit_threshold = low_credit_threshold

    async def __call__(self, event: LifecycleEvent) -> None:
        owner_id = event.payload.get("owner_id")
        names = templates_for(event, self.low_credit_threshold)
        if not owner_id or not names:
            return

        data = {
            "task_id": str(event.task_id),
            "task_title": event.payload.get("title", ""),
            "task_type": event.payload.get("task_type", ""),
            "task_url": f"/v1/tasks/{event.task_id}",
            "approval_url": f"/v1/tasks/{event.task_id}/approve",
            "error_message": event.payload.get("error_message") or DEFAULT_ERROR_MESSAGE,
            "credits_balance": event.payload.get("credits_balance", ""),
            "api_name": (event.payload.get("error_details") or {}).get("service") or "external",
        }

        async with self.session_factory() as session:
            async with session.begin():
                disabled = await NotificationPreferenceRepository(session).disabled(owner_id)
                wanted = [name for name in names if name not in disabled]
                notifications = NotificationRepository(session)
                for name in wanted:
                    template = TEMPLATES[name]
                    await notifications.add(
                        account_id=owner_id,
                        template=name,
                        subject=render(template.subject, data),
                        body=render(template.body, data),
                        task_id=event.task_id,
                        data=data,
                    )
        if len(wanted) < len(names):
            metrics.inc_counter("notifications.suppressed", len(names) - len(wanted))
        if wanted:
            metrics.inc_counter("notifications.created", len(wanted))
            logger.debug("Raised %s for task %s", ", ".join(wanted), event.task_id)

    async def list(
        self,
        account_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        async with self.session_factory() as session:
            async with session.begin():
                return await NotificationRepository(session).list(
                    account_id, unread_only=unread_only, limit=limit
                )

    async def mark_read(self, account_id: str, notification_ids: list[UUID] | None = None) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                return await NotificationRepository(session).mark_read(account_id, notification_ids)

    async def preferences(self, account_id: str) -> dict[str, bool]:
        """Every template mapped to whether the account receives it."""
        async with self.session_factory() as session:
            async with session.begin():
                stored = await NotificationPreferenceRepository(session).get(account_id)
        return {name: stored.get(name, True) for name in TEMPLATES}

    async def update_preferences(
        self, account_id: str, preferences: dict[str, bool]
    ) -> dict[str, bool]:
        """Opt an account in or out of individual templates."""
        unknown = sorted(set(preferences) - set(TEMPLATES))
        if unknown:
            raise ValidationError(
                f"Unknown notification templates: {', '.join(unknown)}",
                code="unknown_template",
                field="preferences",
            )
        async with self.session_factory() as session:
            async with session.begin():
                await NotificationPreferenceRepository(session).save(
                    account_id, {name: bool(enabled) for name, enabled in preferences.items()}
                )
        logger.info("Notification preferences updated for %s", account_id)
        return await self.preferences(account_id)
