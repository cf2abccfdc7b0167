"""Task dependency validation and readiness."""

from typing import Iterable
from uuid import UUID

from taskgate.db.repositories import TaskRepository
from taskgate.engine.errors import CycleDetected, UnknownDependency
from taskgate.models import Task, TaskStatus


def normalize_dependencies(dependencies: Iterable[UUID] | None) -> list[UUID]:
    """Collapse duplicates while keeping first-seen order."""
    seen: dict[UUID, None] = {}
    for dep in dependencies or ():
        seen.setdefault(UUID(str(dep)), None)
    return list(seen)


class DependencyResolver:
    """Validates dependency sets and evaluates readiness.

    Works over a TaskRepository bound to the caller's session so checks see
    the same snapshot as the surrounding transaction.
    """

    async def validate(
        self,
        tasks: TaskRepository,
        task_id: UUID,
        proposed: Iterable[UUID],
    ) -> list[UUID]:
        """Check proposed as the complete dependency set of task_id.

        Returns the normalized set. Raises UnknownDependency or CycleDetected
        without touching the graph.
        """
        proposed = normalize_dependencies(proposed)
        if not proposed:
            return proposed

        if task_id in proposed:
            raise CycleDetected(str(task_id), [str(task_id), str(task_id)])

        known = await tasks.statuses(proposed)
        missing = [str(dep) for dep in proposed if dep not in known]
        if missing:
            raise UnknownDependency(missing)

        path = await self._find_path(tasks, proposed, task_id)
        if path is not None:
            raise CycleDetected(str(task_id), [str(task_id)] + [str(node) for node in path])

        return proposed

    async def _find_path(
        self,
        tasks: TaskRepository,
        starts: list[UUID],
        target: UUID,
    ) -> list[UUID] | None:
        """Iterative DFS over stored edges from starts, looking for target.

        Edges out of target itself are ignored since its dependency set is
        being replaced.
        """
        parents: dict[UUID, UUID | None] = {start: None for start in starts}
        stack = list(starts)
        edges: dict[UUID, list[UUID]] = {}

        while stack:
            # Fetch edges for the whole frontier in one query.
            unfetched = [node for node in stack if node not in edges and node != target]
            if unfetched:
                edges.update(await tasks.dependencies_of(unfetched))
                for node in unfetched:
                    edges.setdefault(node, [])

            node = stack.pop()
            if node == target:
                path = []
                cursor: UUID | None = node
                while cursor is not None:
                    path.append(cursor)
                    cursor = parents[cursor]
                path.reverse()
                return path

            for nxt in edges.get(node, []):
                if nxt not in parents:
                    parents[nxt] = node
                    stack.append(nxt)

        return None

    async def is_ready(self, tasks: TaskRepository, task: Task) -> bool:
        """True when every dependency is completed."""
        return not await self.blocking(tasks, task)

    async def blocking(self, tasks: TaskRepository, task: Task) -> list[UUID]:
        """Dependencies that are not completed, missing ones included."""
        if not task.dependencies:
            return []
        statuses = await tasks.statuses(task.dependencies)
        return [
            dep for dep in task.dependencies
            if statuses.get(dep) != TaskStatus.COMPLETED
        ]

    @staticmethod
    def ready_in(task: Task, statuses: dict[UUID, TaskStatus]) -> bool:
        """Readiness against a pre-fetched status snapshot."""
        return all(statuses.get(dep) == TaskStatus.COMPLETED for dep in task.dependencies)
