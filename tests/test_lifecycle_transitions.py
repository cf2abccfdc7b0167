"""
Task lifecycle: creation, approval, cancellation, completion and failure.
"""

from uuid import uuid4

import pytest

from taskgate.engine.errors import (
    InsufficientCredit,
    InvalidTransition,
    TaskNotFound,
    UnknownTaskType,
    ValidationError,
)
from taskgate.db.repositories import TaskRepository
from taskgate.models import LogLevel, TaskStatus, VALID_TRANSITIONS
from taskgate.processors.base import ProcessorResult

from conftest import ACCOUNT


@pytest.mark.asyncio
async def test_create_reserves_credit_and_logs(engine, ledger, funded):
    task = await engine.create_task(ACCOUNT, "echo", "Hello", inputs={"x": 1})

    assert task.status == TaskStatus.PENDING
    assert task.credit_cost == 5
    assert (await ledger.credits(ACCOUNT)).held == 5

    stored = await engine.get_task(task.task_id)
    assert stored.inputs == {"x": 1}
    logs = await engine.get_task_logs(task.task_id)
    assert len(logs) == 1
    assert "5 credits reserved" in logs[0].message


@pytest.mark.asyncio
async def test_create_requires_owner_and_title(engine, funded):
    with pytest.raises(ValidationError):
        await engine.create_task("", "echo", "t")
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_task(ACCOUNT, "echo", "   ")
    assert exc_info.value.field == "title"


@pytest.mark.asyncio
async def test_create_unknown_type_is_validation_error(engine, funded):
    with pytest.raises(UnknownTaskType) as exc_info:
        await engine.create_task(ACCOUNT, "nope", "t")
    assert isinstance(exc_info.value, ValidationError)


@pytest.mark.asyncio
async def test_invalid_inputs_leave_no_record(engine, ledger, funded):
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_task(ACCOUNT, "echo", "t", inputs={"invalid": True})

    assert exc_info.value.code == "invalid_input"
    tasks, _ = await engine.list_tasks(owner_id=ACCOUNT)
    assert tasks == []
    assert (await ledger.credits(ACCOUNT)).held == 0


@pytest.mark.asyncio
async def test_second_task_rejected_when_first_holds_all_credit(engine, ledger):
    await ledger.topup(ACCOUNT, 10)
    t1 = await engine.create_task(ACCOUNT, "expensive", "T1")
    assert t1.credit_cost == 10
    assert (await ledger.credits(ACCOUNT)).available == 0

    with pytest.raises(InsufficientCredit):
        await engine.create_task(ACCOUNT, "echo", "T2")

    tasks, _ = await engine.list_tasks(owner_id=ACCOUNT)
    assert [t.task_id for t in tasks] == [t1.task_id]


@pytest.mark.asyncio
async def test_approval_flow(engine, events, funded):
    task = await engine.create_task(ACCOUNT, "echo_approval", "Needs sign-off")
    assert task.status == TaskStatus.APPROVAL_REQUIRED

    approved = await engine.approve_task(task.task_id)
    assert approved.status == TaskStatus.PENDING

    assert [(e.old_status, e.new_status) for e in events] == [
        (None, TaskStatus.APPROVAL_REQUIRED),
        (TaskStatus.APPROVAL_REQUIRED, TaskStatus.PENDING),
    ]
    assert events[1].payload["event"] == "approved"


@pytest.mark.asyncio
async def test_approve_rejected_unless_waiting(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    with pytest.raises(InvalidTransition):
        await engine.approve_task(task.task_id)


@pytest.mark.asyncio
async def test_request_approval_sends_pending_task_back(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")

    waiting = await engine.request_approval(task.task_id, "looks expensive")

    assert waiting.status == TaskStatus.APPROVAL_REQUIRED
    logs = await engine.get_task_logs(task.task_id)
    assert logs[-1].message == "Approval requested: looks expensive"


@pytest.mark.asyncio
async def test_draft_submit_goes_pending_or_to_approval(engine, funded):
    plain = await engine.create_task(ACCOUNT, "echo", "plain", draft=True)
    gated = await engine.create_task(ACCOUNT, "echo_approval", "gated", draft=True)
    assert plain.status == gated.status == TaskStatus.DRAFT

    assert (await engine.submit_task(plain.task_id)).status == TaskStatus.PENDING
    assert (await engine.submit_task(gated.task_id)).status == TaskStatus.APPROVAL_REQUIRED

    with pytest.raises(InvalidTransition):
        await engine.submit_task(plain.task_id)


@pytest.mark.asyncio
async def test_cancel_refunds_reservation(engine, ledger, events, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")

    canceled = await engine.cancel_task(task.task_id, "changed my mind")

    assert canceled.status == TaskStatus.CANCELED
    assert canceled.finished_at is not None
    credits = await ledger.credits(ACCOUNT)
    assert (credits.balance, credits.held) == (100, 0)
    assert events[-1].new_status == TaskStatus.CANCELED
    assert events[-1].payload["reason"] == "changed my mind"


@pytest.mark.asyncio
async def test_cancel_from_every_pre_admission_state(engine, funded):
    draft = await engine.create_task(ACCOUNT, "echo", "d", draft=True)
    waiting = await engine.create_task(ACCOUNT, "echo_approval", "w")
    pending = await engine.create_task(ACCOUNT, "echo", "p")

    for task in (draft, waiting, pending):
        assert (await engine.cancel_task(task.task_id)).status == TaskStatus.CANCELED


@pytest.mark.asyncio
async def test_cancel_processing_task_is_rejected(engine, ledger, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    with pytest.raises(InvalidTransition):
        await engine.cancel_task(task.task_id)

    stored = await engine.get_task(task.task_id)
    assert stored.status == TaskStatus.PROCESSING
    assert (await ledger.credits(ACCOUNT)).held == 5


@pytest.mark.asyncio
async def test_terminal_states_accept_no_transition(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.cancel_task(task.task_id)

    with pytest.raises(InvalidTransition):
        await engine.cancel_task(task.task_id)
    with pytest.raises(InvalidTransition):
        await engine.approve_task(task.task_id)
    with pytest.raises(InvalidTransition):
        await engine.admit_task(task.task_id)


def test_transition_table_has_no_exits_from_terminal_states():
    for status in TaskStatus.terminal_states():
        assert VALID_TRANSITIONS[status] == set()
    assert VALID_TRANSITIONS[TaskStatus.PROCESSING] == {TaskStatus.COMPLETED, TaskStatus.FAILED}


@pytest.mark.asyncio
async def test_complete_debits_and_records_outputs(engine, ledger, events, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    done = await engine.finalize_task(task.task_id, ProcessorResult.success({"answer": 42}))

    assert done.status == TaskStatus.COMPLETED
    assert done.outputs["answer"] == 42
    assert "generated_at" in done.outputs
    assert done.completed_at is not None
    assert done.error is None
    credits = await ledger.credits(ACCOUNT)
    assert (credits.balance, credits.held) == (95, 0)
    assert events[-1].payload["credits_charged"] == 5
    assert events[-1].payload["credits_balance"] == 95


@pytest.mark.asyncio
async def test_failure_refunds_and_records_error(engine, ledger, events, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    failed = await engine.finalize_task(
        task.task_id, ProcessorResult.failure("api_error", "upstream down")
    )

    assert failed.status == TaskStatus.FAILED
    assert failed.error.code == "api_error"
    assert failed.outputs == {}
    assert failed.completed_at is None
    credits = await ledger.credits(ACCOUNT)
    assert (credits.balance, credits.held) == (100, 0)

    logs = await engine.get_task_logs(task.task_id)
    assert logs[-1].level == LogLevel.ERROR
    assert logs[-1].message == "Task failed: upstream down"
    assert events[-1].payload["error_message"] == "upstream down"


@pytest.mark.asyncio
async def test_success_without_outputs_becomes_failure(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    result = await engine.finalize_task(task.task_id, ProcessorResult.success({}))

    assert result.status == TaskStatus.FAILED
    assert result.error.code == "empty_outputs"


@pytest.mark.asyncio
async def test_pending_outcome_cannot_finalize(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    with pytest.raises(ValidationError):
        await engine.finalize_task(task.task_id, ProcessorResult.pending("ref"))


@pytest.mark.asyncio
async def test_finalize_requires_processing(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    with pytest.raises(InvalidTransition):
        await engine.finalize_task(task.task_id, ProcessorResult.success({"a": 1}))


@pytest.mark.asyncio
async def test_priority_frozen_after_admission(engine, funded):
    task = await engine.create_task(ACCOUNT, "echo", "t")
    await engine.admit_task(task.task_id)

    with pytest.raises(InvalidTransition):
        await engine.update_priority(task.task_id, 10)


@pytest.mark.asyncio
async def test_unknown_task_raises_not_found(engine):
    with pytest.raises(TaskNotFound):
        await engine.get_task(uuid4())
    with pytest.raises(TaskNotFound):
        await engine.cancel_task(uuid4())
    with pytest.raises(TaskNotFound):
        await engine.get_task_logs(uuid4())


@pytest.mark.asyncio
async def test_list_tasks_filters_and_pages(engine, ledger, funded):
    await ledger.topup("other", 50)
    mine = [await engine.create_task(ACCOUNT, "echo", f"t{i}") for i in range(3)]
    await engine.create_task("other", "echo", "theirs")
    await engine.cancel_task(mine[0].task_id)

    page, cursor = await engine.list_tasks(owner_id=ACCOUNT, limit=2)
    assert [t.task_id for t in page] == [mine[2].task_id, mine[1].task_id]
    assert cursor is not None

    rest, cursor = await engine.list_tasks(owner_id=ACCOUNT, limit=2, cursor=cursor)
    assert [t.task_id for t in rest] == [mine[0].task_id]
    assert cursor is None

    canceled, _ = await engine.list_tasks(status=TaskStatus.CANCELED)
    assert [t.task_id for t in canceled] == [mine[0].task_id]


@pytest.mark.asyncio
async def test_paging_keeps_tasks_sharing_a_timestamp(runtime, engine, funded):
    tasks = [await engine.create_task(ACCOUNT, "echo", f"t{i}") for i in range(5)]
    stamp = tasks[0].created_at
    async with runtime.session_factory() as session:
        async with session.begin():
            repo = TaskRepository(session)
            for task in tasks:
                await repo.update_fields(task.task_id, created_at=stamp)

    seen = []
    page, cursor = await engine.list_tasks(owner_id=ACCOUNT, limit=2)
    seen += [t.task_id for t in page]
    while cursor is not None:
        page, cursor = await engine.list_tasks(owner_id=ACCOUNT, limit=2, cursor=cursor)
        seen += [t.task_id for t in page]

    assert seen == sorted((t.task_id for t in tasks), reverse=True)


@pytest.mark.asyncio
async def test_malformed_cursor_is_rejected(engine):
    with pytest.raises(ValidationError) as exc_info:
        await engine.list_tasks(cursor="not-a-cursor")
    assert exc_info.value.field == "cursor"
