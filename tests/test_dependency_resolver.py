"""
Dependency validation, cycle detection and readiness.
"""

from uuid import uuid4

import pytest

from taskgate.engine.dependencies import DependencyResolver, normalize_dependencies
from taskgate.engine.errors import CycleDetected, InvalidTransition, UnknownDependency
from taskgate.models import TaskStatus
from taskgate.processors.base import ProcessorResult

from conftest import ACCOUNT


async def _create(engine, title="t", task_type="echo", **kwargs):
    return await engine.create_task(ACCOUNT, task_type, title, **kwargs)


def test_normalize_dependencies_dedupes_in_order():
    a, b = uuid4(), uuid4()
    assert normalize_dependencies([a, b, a, str(b)]) == [a, b]
    assert normalize_dependencies(None) == []


@pytest.mark.asyncio
async def test_create_with_unknown_dependency_is_rejected(engine, ledger, funded):
    missing = uuid4()
    with pytest.raises(UnknownDependency) as exc_info:
        await _create(engine, dependencies=[missing])

    assert exc_info.value.missing == [str(missing)]
    tasks, _ = await engine.list_tasks(owner_id=ACCOUNT)
    assert tasks == []
    assert (await ledger.credits(ACCOUNT)).held == 0


@pytest.mark.asyncio
async def test_self_dependency_is_a_cycle(engine, funded):
    task = await _create(engine)
    with pytest.raises(CycleDetected) as exc_info:
        await engine.set_dependencies(task.task_id, [task.task_id])
    assert exc_info.value.path == [str(task.task_id), str(task.task_id)]


@pytest.mark.asyncio
async def test_edit_that_closes_a_cycle_is_rejected_and_graph_unchanged(engine, funded):
    a = await _create(engine, "a")
    b = await _create(engine, "b", dependencies=[a.task_id])
    c = await _create(engine, "c", dependencies=[b.task_id])

    with pytest.raises(CycleDetected) as exc_info:
        await engine.add_dependency(a.task_id, c.task_id)

    assert exc_info.value.path == [
        str(a.task_id),
        str(c.task_id),
        str(b.task_id),
        str(a.task_id),
    ]
    assert (await engine.get_task(a.task_id)).dependencies == []
    assert (await engine.get_task(c.task_id)).dependencies == [b.task_id]


@pytest.mark.asyncio
async def test_diamond_is_not_a_cycle(engine, funded):
    root = await _create(engine, "root")
    left = await _create(engine, "left", dependencies=[root.task_id])
    right = await _create(engine, "right", dependencies=[root.task_id])
    top = await _create(engine, "top", dependencies=[left.task_id, right.task_id])

    assert top.dependencies == [left.task_id, right.task_id]


@pytest.mark.asyncio
async def test_readiness_follows_dependency_status(engine, executor, funded):
    t1 = await _create(engine, "t1")
    t2 = await _create(engine, "t2", dependencies=[t1.task_id])

    assert await engine.is_ready(t1.task_id)
    assert not await engine.is_ready(t2.task_id)
    assert await engine.blocking_dependencies(t2.task_id) == [t1.task_id]

    await executor.execute(t1.task_id)

    assert await engine.is_ready(t2.task_id)
    assert await engine.blocking_dependencies(t2.task_id) == []


@pytest.mark.asyncio
async def test_failed_dependency_blocks_until_edited(engine, executor, funded):
    t1 = await _create(engine, "t1", task_type="fail")
    t2 = await _create(engine, "t2", dependencies=[t1.task_id])

    await executor.execute(t1.task_id)
    assert (await engine.get_task(t1.task_id)).status == TaskStatus.FAILED

    assert not await engine.is_ready(t2.task_id)
    assert await executor.run_until_idle() == 0
    assert (await engine.get_task(t2.task_id)).status == TaskStatus.PENDING

    await engine.remove_dependency(t2.task_id, t1.task_id)
    assert await engine.is_ready(t2.task_id)


@pytest.mark.asyncio
async def test_admission_is_refused_while_blocked(engine, funded):
    t1 = await _create(engine, "t1")
    t2 = await _create(engine, "t2", dependencies=[t1.task_id])

    with pytest.raises(InvalidTransition):
        await engine.admit_task(t2.task_id)
    assert (await engine.get_task(t2.task_id)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_dependencies_fixed_after_approval_queue(engine, funded):
    dep = await _create(engine, "dep")
    waiting = await _create(engine, "waiting", task_type="echo_approval")

    with pytest.raises(InvalidTransition):
        await engine.set_dependencies(waiting.task_id, [dep.task_id])


@pytest.mark.asyncio
async def test_set_dependencies_logs_change(engine, funded):
    a = await _create(engine, "a")
    b = await _create(engine, "b")

    await engine.set_dependencies(b.task_id, [a.task_id, a.task_id])

    assert (await engine.get_task(b.task_id)).dependencies == [a.task_id]
    logs = await engine.get_task_logs(b.task_id)
    assert logs[-1].message.startswith("Dependencies set to")


def test_static_readiness_helpers():
    class Stub:
        dependencies = [uuid4(), uuid4()]

    task = Stub()
    done = {dep: TaskStatus.COMPLETED for dep in task.dependencies}
    assert DependencyResolver.ready_in(task, done)

    partly_failed = dict(done)
    partly_failed[task.dependencies[0]] = TaskStatus.FAILED
    assert not DependencyResolver.ready_in(task, partly_failed)


@pytest.mark.asyncio
async def test_finalizing_dependency_does_not_touch_dependents(engine, executor, funded):
    t1 = await _create(engine, "t1")
    t2 = await _create(engine, "t2", dependencies=[t1.task_id])
    await engine.admit_task(t1.task_id)

    await engine.finalize_task(t1.task_id, ProcessorResult.failure("x", "no"))

    assert (await engine.get_task(t2.task_id)).status == TaskStatus.PENDING
