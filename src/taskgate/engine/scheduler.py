"""Priority scheduler - picks the next runnable tasks."""

import logging
from typing import Iterable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskgate.config import Settings
from taskgate.db.repositories import LedgerRepository, TaskRepository
from taskgate.engine.dependencies import DependencyResolver
from taskgate.engine.errors import TaskGateSystemError
from taskgate.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class PriorityScheduler:
    """Orders ready pending tasks for admission.

    A task is selectable when it is pending, every dependency is completed and
    its own credit reservation is still outstanding. Ties on priority break on
    creation time, then task id, so selection is deterministic.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: DependencyResolver,
        higher_priority_first: bool = True,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.higher_priority_first = higher_priority_first

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: DependencyResolver,
        settings: Settings,
    ) -> "PriorityScheduler":
        return cls(session_factory, resolver, settings.higher_priority_first)

    def sort_key(self, task: Task) -> tuple:
        priority = -task.priority if self.higher_priority_first else task.priority
        return (priority, task.created_at, str(task.task_id))

    async def select(
        self,
        limit: int | None = None,
        exclude: Iterable[UUID] = (),
    ) -> list[Task]:
        """Ready tasks in admission order, at most limit of them."""
        excluded = set(exclude)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    tasks = TaskRepository(session)
                    pending = [
                        task for task in await tasks.list_by_status(TaskStatus.PENDING)
                        if task.task_id not in excluded
                    ]
                    if not pending:
                        return []
                    statuses = await tasks.statuses(
                        dep for task in pending for dep in task.dependencies
                    )
                    reserved = await LedgerRepository(session).outstanding_references(
                        task.task_id for task in pending
                    )
        except SQLAlchemyError as exc:
            logger.error("Scheduler snapshot failed: %s", exc)
            raise TaskGateSystemError() from exc

        ready = [
            task for task in pending
            if task.task_id in reserved and self.resolver.ready_in(task, statuses)
        ]
        ready.sort(key=self.sort_key)
        if limit is not None:
            ready = ready[:limit]
        return ready
