"""TaskGate core engine - task lifecycle state machine."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskgate.approval import ApprovalAuthority
from taskgate.config import Settings
from taskgate.db.repositories import (
    LedgerRepository,
    TaskLogRepository,
    TaskRepository,
    decode_cursor,
)
from taskgate.engine.dependencies import DependencyResolver, normalize_dependencies
from taskgate.engine.errors import (
    InvalidTransition,
    TaskNotFound,
    TaskGateSystemError,
    ValidationError,
)
from taskgate.engine.ledger import CreditLedger
from taskgate.engine.locks import KeyedLock
from taskgate.models import LogLevel, Task, TaskError, TaskLogEntry, TaskStatus
from taskgate.notifications.bus import NotificationBus
from taskgate.observability.metrics import metrics
from taskgate.processors.base import ProcessorResult, stamp_outputs
from taskgate.processors.registry import ProcessorRegistry
from taskgate.utils.time import seconds_from_now, utc_now

logger = logging.getLogger(__name__)

# Hook run inside the transition transaction; returns extra event payload.
SettleHook = Callable[[AsyncSession, Task], Awaitable[dict[str, Any]]]


class TaskGateEngine:
    """Owns every task status transition and its side effects.

    Each transition runs under the task's lock, in one transaction that
    writes the status (compare-and-set), one log entry and any ledger
    settlement. The lifecycle event is published after the commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProcessorRegistry,
        ledger: CreditLedger,
        resolver: DependencyResolver,
        bus: NotificationBus,
        approval: ApprovalAuthority,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.ledger = ledger
        self.resolver = resolver
        self.bus = bus
        self.approval = approval
        self.settings = settings
        self._task_locks = KeyedLock()
        self._graph_lock = asyncio.Lock()

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        """One committed transaction; store errors become TaskGateSystemError."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Task store error: %s", exc)
            metrics.inc_counter("task.store_error")
            raise TaskGateSystemError() from exc

    async def _publish(
        self,
        task: Task,
        old_status: TaskStatus | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event_payload = {
            "owner_id": task.owner_id,
            "task_type": task.task_type,
            "title": task.title,
            **(payload or {}),
        }
        try:
            await self.bus.publish(task.task_id, old_status, task.status, event_payload)
        except Exception as exc:
            metrics.inc_counter("bus.publish_failed")
            logger.error("Failed to publish event for task %s: %s", task.task_id, exc)

    async def _transition(
        self,
        task_id: UUID,
        new_status: TaskStatus,
        message: str,
        *,
        allowed_from: Iterable[TaskStatus] | None = None,
        level: LogLevel = LogLevel.INFO,
        values: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        guard: Callable[[TaskRepository, Task], Awaitable[None]] | None = None,
        settle: SettleHook | None = None,
    ) -> Task:
        """Apply one status transition atomically and publish its event."""
        allowed = set(allowed_from) if allowed_from is not None else None

        async with self._task_locks.hold(task_id):
            async with self._unit_of_work() as session:
                tasks = TaskRepository(session)
                task = await tasks.get(task_id)
                if task is None:
                    raise TaskNotFound(str(task_id))
                old_status = task.status

                if (allowed is not None and old_status not in allowed) or not task.can_transition_to(
                    new_status
                ):
                    raise InvalidTransition(old_status.value, new_status.value)

                if guard:
                    await guard(tasks, task)

                event_payload = dict(payload or {})
                if settle:
                    event_payload.update(await settle(session, task))

                now = utc_now()
                fields = {"updated_at": now, **(values or {})}
                if new_status.is_terminal():
                    fields["finished_at"] = now

                swapped = await tasks.compare_and_set_status(
                    task_id, old_status, new_status, **fields
                )
                if not swapped:
                    raise InvalidTransition(
                        old_status.value, new_status.value, "status changed concurrently"
                    )

                await TaskLogRepository(session).append(task_id, level, message)
                updated = await tasks.get(task_id)

            metrics.inc_counter(f"task.transition.{new_status.value}")
            logger.info(
                "Task %s: %s -> %s", task_id, old_status.value, new_status.value
            )
            await self._publish(updated, old_status, event_payload)

        return updated

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_task(
        self,
        owner_id: str,
        task_type: str,
        title: str,
        inputs: dict[str, Any] | None = None,
        description: str = "",
        priority: int | None = None,
        dependencies: Iterable[UUID] | None = None,
        draft: bool = False,
    ) -> Task:
        """Validate, reserve credit and persist a new task.

        Nothing is written and no credit is held when any check fails.
        """
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")
        definition = self.registry.definition(task_type)
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required", field="title")
        inputs = dict(inputs or {})
        self.registry.get(task_type).validate_inputs(inputs)

        priority = self.settings.clamp_priority(priority)
        deps = normalize_dependencies(dependencies)

        if draft:
            status = TaskStatus.DRAFT
        elif self.approval.requires_approval(owner_id, task_type):
            status = TaskStatus.APPROVAL_REQUIRED
        else:
            status = TaskStatus.PENDING

        now = utc_now()
        task = Task(
            task_id=uuid4(),
            owner_id=owner_id,
            task_type=task_type,
            title=title,
            description=description or "",
            inputs=inputs,
            credit_cost=definition.credit_cost,
            priority=priority,
            dependencies=deps,
            status=status,
            created_at=now,
            updated_at=now,
        )

        async with self.ledger.account_lock(owner_id):
            async with self._unit_of_work() as session:
                tasks = TaskRepository(session)
                await self.resolver.validate(tasks, task.task_id, deps)
                await self.ledger.reserve_in(session, owner_id, definition.credit_cost, task.task_id)
                await tasks.add(task)
                await TaskLogRepository(session).append(
                    task.task_id,
                    LogLevel.INFO,
                    f"Task created as {status.value}; {definition.credit_cost} credits reserved",
                )

        metrics.inc_counter("task.created")
        metrics.inc_counter(f"task.transition.{status.value}")
        logger.info("Task %s created for %s (%s, %s)", task.task_id, owner_id, task_type, status.value)
        await self._publish(task, None, {"event": "created", "credit_cost": definition.credit_cost})
        return task

    # =========================================================================
    # Pre-admission transitions
    # =========================================================================

    async def submit_task(self, task_id: UUID) -> Task:
        """Move a draft into the approval queue or straight to pending."""
        task = await self.get_task(task_id)
        if self.approval.requires_approval(task.owner_id, task.task_type):
            target = TaskStatus.APPROVAL_REQUIRED
        else:
            target = TaskStatus.PENDING
        return await self._transition(
            task_id,
            target,
            f"Task submitted; now {target.value}",
            allowed_from={TaskStatus.DRAFT},
            payload={"event": "submitted"},
        )

    async def approve_task(self, task_id: UUID) -> Task:
        return await self._transition(
            task_id,
            TaskStatus.PENDING,
            "Task approved",
            allowed_from={TaskStatus.APPROVAL_REQUIRED},
            payload={"event": "approved"},
        )

    async def request_approval(self, task_id: UUID, reason: str | None = None) -> Task:
        """Send a pending task back for approval before it is admitted."""
        message = "Approval requested"
        if reason:
            message = f"{message}: {reason}"
        return await self._transition(
            task_id,
            TaskStatus.APPROVAL_REQUIRED,
            message,
            allowed_from={TaskStatus.PENDING},
            payload={"event": "approval_requested", "reason": reason},
        )

    async def cancel_task(self, task_id: UUID, reason: str | None = None) -> Task:
        """Cancel a task that has not been admitted and refund its credit."""
        task = await self.get_task(task_id)
        if task.status == TaskStatus.PROCESSING:
            raise InvalidTransition(
                task.status.value, TaskStatus.CANCELED.value, "task is already processing"
            )

        async def refund(session: AsyncSession, current: Task) -> dict[str, Any]:
            await self.ledger.refund_in(
                session, current.owner_id, current.credit_cost, current.task_id
            )
            return {}

        message = "Task canceled"
        if reason:
            message = f"{message}: {reason}"
        return await self._transition(
            task_id,
            TaskStatus.CANCELED,
            message,
            allowed_from=TaskStatus.pre_admission_states(),
            payload={"event": "canceled", "reason": reason},
            settle=refund,
        )

    # =========================================================================
    # Execution transitions
    # =========================================================================

    async def admit_task(self, task_id: UUID) -> Task:
        """Claim a ready pending task for execution.

        The status compare-and-set makes admission at-most-once.
        """

        async def require_ready(tasks: TaskRepository, task: Task) -> None:
            blocking = await self.resolver.blocking(tasks, task)
            if blocking:
                raise InvalidTransition(
                    task.status.value,
                    TaskStatus.PROCESSING.value,
                    "waiting on dependencies " + ", ".join(str(dep) for dep in blocking),
                )

        return await self._transition(
            task_id,
            TaskStatus.PROCESSING,
            "Processing started",
            allowed_from={TaskStatus.PENDING},
            values={"started_at": utc_now()},
            payload={"event": "started"},
            guard=require_ready,
        )

    async def await_external(
        self,
        task_id: UUID,
        external_ref: str,
        poll_after_seconds: float | None = None,
    ) -> Task:
        """Record that a processing task is waiting on an external result."""
        if not external_ref:
            raise ValidationError("external_ref is required", field="external_ref")
        delay = (
            self.settings.external_poll_interval_seconds
            if poll_after_seconds is None
            else max(0.0, poll_after_seconds)
        )

        async with self._task_locks.hold(task_id):
            async with self._unit_of_work() as session:
                tasks = TaskRepository(session)
                task = await tasks.get(task_id)
                if task is None:
                    raise TaskNotFound(str(task_id))
                if task.status != TaskStatus.PROCESSING:
                    raise InvalidTransition(
                        task.status.value,
                        TaskStatus.PROCESSING.value,
                        "only processing tasks can wait on external results",
                    )
                await tasks.update_fields(
                    task_id, external_ref=external_ref, next_poll_at=seconds_from_now(delay)
                )
                if task.external_ref != external_ref:
                    await TaskLogRepository(session).append(
                        task_id, LogLevel.INFO, f"Waiting for external result {external_ref}"
                    )
                updated = await tasks.get(task_id)

        metrics.inc_counter("task.awaiting_external")
        return updated

    async def finalize_task(self, task_id: UUID, outcome: ProcessorResult) -> Task:
        """Complete or fail a processing task and settle its credit."""
        if outcome.is_pending:
            raise ValidationError(
                "A pending result cannot finalize a task; use await_external", field="outcome"
            )

        if outcome.is_success and not outcome.outputs:
            outcome = ProcessorResult.failure(
                "empty_outputs", "Processor reported success without outputs"
            )

        if outcome.is_success:
            return await self._complete(task_id, stamp_outputs(outcome.outputs))
        error = outcome.error or TaskError(
            code="processor_failure", message="Processor reported failure"
        )
        return await self._fail(task_id, error)

    async def _complete(self, task_id: UUID, outputs: dict[str, Any]) -> Task:
        async def debit(session: AsyncSession, task: Task) -> dict[str, Any]:
            await self.ledger.debit_in(session, task.owner_id, task.credit_cost, task.task_id)
            balance = await LedgerRepository(session).balance(task.owner_id)
            return {"credits_charged": task.credit_cost, "credits_balance": balance}

        return await self._transition(
            task_id,
            TaskStatus.COMPLETED,
            "Task completed",
            allowed_from={TaskStatus.PROCESSING},
            values={
                "outputs": outputs,
                "error": None,
                "completed_at": utc_now(),
                "external_ref": None,
                "next_poll_at": None,
            },
            payload={"event": "completed"},
            settle=debit,
        )

    async def _fail(self, task_id: UUID, error: TaskError) -> Task:
        async def refund(session: AsyncSession, task: Task) -> dict[str, Any]:
            await self.ledger.refund_in(session, task.owner_id, task.credit_cost, task.task_id)
            return {"credits_refunded": task.credit_cost}

        return await self._transition(
            task_id,
            TaskStatus.FAILED,
            f"Task failed: {error.message}",
            allowed_from={TaskStatus.PROCESSING},
            level=LogLevel.ERROR,
            values={
                "error": error,
                "outputs": {},
                "external_ref": None,
                "next_poll_at": None,
            },
            payload={
                "event": "failed",
                "error_code": error.code,
                "error_message": error.message,
                "error_details": error.details,
            },
            settle=refund,
        )

    # =========================================================================
    # Owner edits
    # =========================================================================

    async def update_priority(self, task_id: UUID, priority: int) -> Task:
        """Change priority before admission. Logged, no lifecycle event."""
        priority = self.settings.clamp_priority(priority)
        async with self._task_locks.hold(task_id):
            async with self._unit_of_work() as session:
                tasks = TaskRepository(session)
                task = await tasks.get(task_id)
                if task is None:
                    raise TaskNotFound(str(task_id))
                if task.status not in TaskStatus.pre_admission_states():
                    raise InvalidTransition(
                        task.status.value, task.status.value, "priority is fixed after admission"
                    )
                if task.priority != priority:
                    await tasks.update_fields(task_id, priority=priority)
                    await TaskLogRepository(session).append(
                        task_id,
                        LogLevel.INFO,
                        f"Priority changed from {task.priority} to {priority}",
                    )
                updated = await tasks.get(task_id)
        return updated

    async def set_dependencies(self, task_id: UUID, dependencies: Iterable[UUID]) -> Task:
        """Replace the dependency set of a draft or pending task."""
        proposed = normalize_dependencies(dependencies)
        async with self._graph_lock:
            async with self._task_locks.hold(task_id):
                async with self._unit_of_work() as session:
                    tasks = TaskRepository(session)
                    task = await tasks.get(task_id)
                    if task is None:
                        raise TaskNotFound(str(task_id))
                    if task.status not in (TaskStatus.DRAFT, TaskStatus.PENDING):
                        raise InvalidTransition(
                            task.status.value,
                            task.status.value,
                            "dependencies can only change while draft or pending",
                        )
                    proposed = await self.resolver.validate(tasks, task_id, proposed)
                    if proposed != task.dependencies:
                        await tasks.update_fields(task_id, dependencies=proposed)
                        await TaskLogRepository(session).append(
                            task_id,
                            LogLevel.INFO,
                            f"Dependencies set to [{', '.join(str(dep) for dep in proposed)}]",
                        )
                    updated = await tasks.get(task_id)
        return updated

    async def add_dependency(self, task_id: UUID, dependency_id: UUID) -> Task:
        task = await self.get_task(task_id)
        return await self.set_dependencies(task_id, [*task.dependencies, dependency_id])

    async def remove_dependency(self, task_id: UUID, dependency_id: UUID) -> Task:
        task = await self.get_task(task_id)
        remaining = [dep for dep in task.dependencies if dep != dependency_id]
        return await self.set_dependencies(task_id, remaining)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_task(self, task_id: UUID) -> Task:
        async with self._unit_of_work() as session:
            task = await TaskRepository(session).get(task_id)
        if task is None:
            raise TaskNotFound(str(task_id))
        return task

    async def list_tasks(
        self,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[Task], str | None]:
        limit = min(limit or self.settings.default_list_limit, self.settings.max_list_limit)
        if cursor:
            try:
                decode_cursor(cursor)
            except ValueError:
                raise ValidationError("Malformed cursor", field="cursor") from None
        async with self._unit_of_work() as session:
            return await TaskRepository(session).list(
                owner_id=owner_id,
                status=status,
                task_type=task_type,
                limit=limit,
                cursor=cursor,
            )

    async def get_task_logs(self, task_id: UUID) -> list[TaskLogEntry]:
        async with self._unit_of_work() as session:
            if await TaskRepository(session).get(task_id) is None:
                raise TaskNotFound(str(task_id))
            return await TaskLogRepository(session).list(task_id)

    async def is_ready(self, task_id: UUID) -> bool:
        return not await self.blocking_dependencies(task_id)

    async def blocking_dependencies(self, task_id: UUID) -> list[UUID]:
        async with self._unit_of_work() as session:
            tasks = TaskRepository(session)
            task = await tasks.get(task_id)
            if task is None:
                raise TaskNotFound(str(task_id))
            return await self.resolver.blocking(tasks, task)

    async def tasks_due_for_poll(self) -> list[Task]:
        """Processing tasks whose external result should be checked now."""
        async with self._unit_of_work() as session:
            return await TaskRepository(session).list_awaiting_external(due_before=utc_now())

    async def interrupted_tasks(self) -> list[Task]:
        async with self._unit_of_work() as session:
            return await TaskRepository(session).list_interrupted()
