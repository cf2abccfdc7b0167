"""
Admission ordering: priority, then creation time, then task id.
"""

from datetime import timedelta

import pytest

from taskgate.db.repositories import TaskRepository
from taskgate.engine.dependencies import DependencyResolver
from taskgate.engine.scheduler import PriorityScheduler

from conftest import ACCOUNT, make_settings


async def _create_in_order(runtime, engine, priorities):
    """Create one echo task per (title, priority), one second apart."""
    tasks = [
        await engine.create_task(ACCOUNT, "echo", title, priority=priority)
        for title, priority in priorities
    ]
    base = tasks[0].created_at
    async with runtime.session_factory() as session:
        async with session.begin():
            repo = TaskRepository(session)
            for offset, task in enumerate(tasks):
                await repo.update_fields(task.task_id, created_at=base + timedelta(seconds=offset))
    return {task.title: task.task_id for task in tasks}


def _titles(tasks):
    return [task.title for task in tasks]


@pytest.mark.asyncio
async def test_higher_priority_first_then_oldest(runtime, engine, scheduler, funded):
    await _create_in_order(runtime, engine, [("A", 5), ("B", 5), ("C", 9), ("D", 1)])

    assert _titles(await scheduler.select()) == ["C", "A", "B", "D"]


@pytest.mark.asyncio
async def test_lower_priority_first(runtime, engine, funded):
    await _create_in_order(runtime, engine, [("A", 5), ("B", 5), ("C", 9), ("D", 1)])
    scheduler = PriorityScheduler(
        runtime.session_factory, runtime.resolver, higher_priority_first=False
    )

    assert _titles(await scheduler.select()) == ["D", "A", "B", "C"]


@pytest.mark.asyncio
async def test_exclude_and_limit(runtime, engine, scheduler, funded):
    ids = await _create_in_order(runtime, engine, [("A", 5), ("B", 5), ("C", 9), ("D", 1)])

    assert _titles(await scheduler.select(exclude={ids["C"], ids["B"]})) == ["A", "D"]
    assert _titles(await scheduler.select(limit=2)) == ["C", "A"]
    assert _titles(await scheduler.select(limit=1, exclude=[ids["C"]])) == ["A"]


@pytest.mark.asyncio
async def test_only_ready_pending_tasks_are_selected(runtime, engine, executor, scheduler, funded):
    upstream = await engine.create_task(ACCOUNT, "echo", "upstream", priority=1)
    downstream = await engine.create_task(
        ACCOUNT, "echo", "downstream", priority=99, dependencies=[upstream.task_id]
    )
    await engine.create_task(ACCOUNT, "echo_approval", "awaiting approval", priority=99)
    await engine.create_task(ACCOUNT, "echo", "draft", priority=99, draft=True)

    assert _titles(await scheduler.select()) == ["upstream"]

    await executor.execute(upstream.task_id)

    selected = await scheduler.select()
    assert [task.task_id for task in selected] == [downstream.task_id]


@pytest.mark.asyncio
async def test_nothing_pending_selects_nothing(scheduler):
    assert await scheduler.select() == []


def test_from_settings_reads_direction(tmp_path):
    settings = make_settings(tmp_path, higher_priority_first=False)
    scheduler = PriorityScheduler.from_settings(None, DependencyResolver(), settings)

    assert scheduler.higher_priority_first is False
