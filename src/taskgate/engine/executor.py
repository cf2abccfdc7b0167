"""Execution engine - worker pool driving admit, process and finalize."""

import asyncio
import logging
from datetime import timedelta
from time import perf_counter
from typing import Awaitable, Callable
from uuid import UUID

from taskgate.config import Settings
from taskgate.engine.core import TaskGateEngine
from taskgate.engine.errors import (
    InvalidTransition,
    ProcessorFailure,
    TaskGateError,
    TaskNotFound,
    UnknownTaskType,
)
from taskgate.engine.scheduler import PriorityScheduler
from taskgate.models import LifecycleEvent, Task, TaskStatus
from taskgate.observability.metrics import metrics
from taskgate.processors.base import ProcessorResult
from taskgate.processors.registry import ProcessorRegistry
from taskgate.utils.time import utc_now

logger = logging.getLogger(__name__)

EXECUTE = "execute"
POLL = "poll"


class ExecutionEngine:
    """Fixed-size asyncio worker pool.

    A dispatcher loop asks the scheduler for ready tasks and the engine for
    external results that are due, and feeds job ids into one bounded queue.
    Workers admit the task, run the processor under a deadline and hand the
    result to the state machine. Any processor exception or timeout becomes
    a failure outcome; nothing escapes a worker.
    """

    def __init__(
        self,
        engine: TaskGateEngine,
        registry: ProcessorRegistry,
        scheduler: PriorityScheduler,
        worker_count: int = 4,
        processor_timeout_seconds: float = 300.0,
        dispatch_interval_seconds: float = 1.0,
        external_result_timeout_seconds: float = 3600.0,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.engine = engine
        self.registry = registry
        self.scheduler = scheduler
        self.worker_count = worker_count
        self.processor_timeout_seconds = processor_timeout_seconds
        self.dispatch_interval_seconds = dispatch_interval_seconds
        self.external_result_timeout_seconds = external_result_timeout_seconds

        self._queue: asyncio.Queue[tuple[str, UUID] | None] = asyncio.Queue(
            maxsize=worker_count * 2
        )
        self._inflight: set[UUID] = set()
        self._workers: list[asyncio.Task] = []
        self._dispatcher: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._running = False

    @classmethod
    def from_settings(
        cls,
        engine: TaskGateEngine,
        registry: ProcessorRegistry,
        scheduler: PriorityScheduler,
        settings: Settings,
    ) -> "ExecutionEngine":
        return cls(
            engine,
            registry,
            scheduler,
            worker_count=settings.worker_count,
            processor_timeout_seconds=settings.processor_timeout_seconds,
            dispatch_interval_seconds=settings.dispatch_interval_seconds,
            external_result_timeout_seconds=settings.external_result_timeout_seconds,
        )

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, recover: bool = True) -> None:
        if self._running:
            return
        if recover:
            await self.recover_interrupted()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"taskgate-worker-{n}")
            for n in range(self.worker_count)
        ]
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="taskgate-dispatcher")
        logger.info("Execution engine started with %d workers", self.worker_count)

    async def stop(self) -> None:
        """Stop dispatching and let workers finish the jobs already queued."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Execution engine stopped")

    async def on_event(self, event: LifecycleEvent) -> None:
        """Bus subscriber: wake the dispatcher when new work may be ready."""
        if event.new_status in (TaskStatus.PENDING, TaskStatus.COMPLETED):
            self._wakeup.set()

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch_once(self) -> int:
        """Queue ready tasks and due polls; returns the number of jobs queued."""
        queued = 0
        free = max(0, self._queue.maxsize - self._queue.qsize())
        if free:
            for task in await self.scheduler.select(limit=free, exclude=self._inflight):
                self._inflight.add(task.task_id)
                await self._queue.put((EXECUTE, task.task_id))
                queued += 1

        for task in await self.engine.tasks_due_for_poll():
            if task.task_id in self._inflight or self._queue.full():
                continue
            self._inflight.add(task.task_id)
            await self._queue.put((POLL, task.task_id))
            queued += 1

        if queued:
            metrics.inc_counter("executor.dispatched", queued)
        return queued

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                queued = await self.dispatch_once()
            except Exception as exc:
                logger.error("Dispatch pass failed: %s", exc, exc_info=True)
                queued = 0
            if queued:
                continue
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self.dispatch_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _worker(self, number: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                kind, task_id = job
                if kind == EXECUTE:
                    await self.execute(task_id)
                else:
                    await self.poll(task_id)
            except Exception as exc:
                logger.error("Worker %d job %s failed: %s", number, job, exc, exc_info=True)
            finally:
                if job is not None:
                    self._inflight.discard(job[1])
                    self._wakeup.set()
                self._queue.task_done()

    # =========================================================================
    # Jobs
    # =========================================================================

    async def execute(self, task_id: UUID) -> Task | None:
        """Admit a task and run its processor once.

        Returns None when the task could not be admitted.
        """
        try:
            task = await self.engine.admit_task(task_id)
        except (InvalidTransition, TaskNotFound) as exc:
            logger.info("Task %s not admitted: %s", task_id, exc.message)
            return None

        try:
            processor = self.registry.get(task.task_type)
        except UnknownTaskType as exc:
            return await self._finalize(task, ProcessorResult.failure("processor_exception", exc.message))
        result = await self._invoke(processor.process, task)
        return await self._apply(task, result)

    async def poll(self, task_id: UUID) -> Task | None:
        """Check on an external result for a task parked in processing."""
        try:
            task = await self.engine.get_task(task_id)
        except TaskNotFound:
            return None
        if not task.is_awaiting_external():
            return task

        if self._external_deadline_passed(task):
            return await self._finalize(
                task,
                ProcessorResult.failure(
                    "external_timeout",
                    f"No external result after {self.external_result_timeout_seconds:.0f}s",
                    {"external_ref": task.external_ref},
                ),
            )

        processor = self.registry.get(task.task_type)
        result = await self._invoke(processor.poll, task)
        return await self._apply(task, result)

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Run ready tasks and due polls inline until nothing is left.

        Intended for tests and one-shot batch runs. Returns the number of
        jobs executed.
        """
        executed = 0
        semaphore = asyncio.Semaphore(self.worker_count)

        async def run(job: Callable[[UUID], Awaitable[Task | None]], task_id: UUID) -> None:
            async with semaphore:
                try:
                    await job(task_id)
                except TaskGateError as exc:
                    logger.error("Job for task %s failed: %s", task_id, exc.message)

        for _ in range(max_rounds):
            ready = await self.scheduler.select()
            due = await self.engine.tasks_due_for_poll()
            if not ready and not due:
                break
            jobs = [run(self.execute, task.task_id) for task in ready]
            jobs.extend(run(self.poll, task.task_id) for task in due)
            await asyncio.gather(*jobs)
            executed += len(jobs)
        return executed

    async def recover_interrupted(self) -> list[UUID]:
        """Fail tasks a previous process left in processing without an external ref."""
        recovered = []
        for task in await self.engine.interrupted_tasks():
            if task.task_id in self._inflight:
                continue
            try:
                await self.engine.finalize_task(
                    task.task_id,
                    ProcessorResult.failure(
                        "interrupted", "Processing was interrupted before a result was recorded"
                    ),
                )
            except InvalidTransition:
                continue
            recovered.append(task.task_id)
        if recovered:
            logger.warning("Recovered %d interrupted task(s)", len(recovered))
            metrics.inc_counter("executor.recovered", len(recovered))
        return recovered

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _invoke(
        self,
        call: Callable[[Task], Awaitable[ProcessorResult]],
        task: Task,
    ) -> ProcessorResult:
        """Run a processor call under the deadline, turning errors into failures."""
        start = perf_counter()
        try:
            result = await asyncio.wait_for(call(task), self.processor_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Task %s processor timed out", task.task_id)
            result = ProcessorResult.failure(
                "processor_timeout",
                f"Processor exceeded {self.processor_timeout_seconds:g}s deadline",
            )
        except ProcessorFailure as exc:
            logger.warning("Task %s processor failed: %s", task.task_id, exc.message)
            result = ProcessorResult.failure(exc.code, exc.message, exc.details)
        except Exception as exc:
            logger.error("Task %s processor raised", task.task_id, exc_info=True)
            result = ProcessorResult.failure(
                "processor_exception",
                str(exc) or type(exc).__name__,
                {"exception": type(exc).__name__},
            )
        finally:
            metrics.observe(
                f"processor.duration_ms.{task.task_type}", (perf_counter() - start) * 1000.0
            )

        if not isinstance(result, ProcessorResult):
            result = ProcessorResult.failure(
                "processor_exception",
                f"Processor returned {type(result).__name__} instead of ProcessorResult",
            )
        metrics.inc_counter(f"processor.outcome.{result.kind.value}")
        return result

    async def _apply(self, task: Task, result: ProcessorResult) -> Task:
        if not result.is_pending:
            return await self._finalize(task, result)
        if not result.external_ref:
            return await self._finalize(
                task,
                ProcessorResult.failure(
                    "processor_exception", "Pending result without an external reference"
                ),
            )
        if self._external_deadline_passed(task):
            return await self._finalize(
                task,
                ProcessorResult.failure(
                    "external_timeout",
                    f"No external result after {self.external_result_timeout_seconds:.0f}s",
                    {"external_ref": result.external_ref},
                ),
            )
        return await self.engine.await_external(
            task.task_id, result.external_ref, result.poll_after_seconds
        )

    async def _finalize(self, task: Task, result: ProcessorResult) -> Task:
        return await self.engine.finalize_task(task.task_id, result)

    def _external_deadline_passed(self, task: Task) -> bool:
        if task.started_at is None:
            return False
        deadline = task.started_at + timedelta(seconds=self.external_result_timeout_seconds)
        return utc_now() >= deadline
