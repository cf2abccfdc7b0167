"""REST API router."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from taskgate.api.deps import get_engine, get_feed, get_ledger, get_runtime
from taskgate.api.schemas import (
    CreateTaskRequest,
    CreditsResponse,
    ErrorResponse,
    HealthResponse,
    LedgerEntriesResponse,
    ListTasksResponse,
    MarkReadRequest,
    MarkReadResponse,
    NotificationPreferencesResponse,
    NotificationsResponse,
    ReadinessResponse,
    ReasonRequest,
    SetDependenciesRequest,
    TaskLogResponse,
    TaskResponse,
    TaskTypeResponse,
    TopupRequest,
    UpdatePreferencesRequest,
    UpdatePriorityRequest,
)
from taskgate.engine.core import TaskGateEngine
from taskgate.engine.errors import (
    CycleDetected,
    InsufficientCredit,
    InvalidTransition,
    ReservationNotFound,
    TaskGateError,
    TaskGateSystemError,
    TaskNotFound,
    UnknownDependency,
    ValidationError,
)
from taskgate.engine.ledger import CreditLedger
from taskgate.models import TaskStatus
from taskgate.notifications.feed import NotificationFeed
from taskgate.observability.metrics import metrics
from taskgate.runtime import Runtime

VERSION = "0.1.0"

router = APIRouter(prefix="/v1")


# ============================================================================
# Error mapping
# ============================================================================


_STATUS_CODES: list[tuple[type[TaskGateError], int]] = [
    (ValidationError, 400),
    (InsufficientCredit, 402),
    (TaskNotFound, 404),
    (InvalidTransition, 409),
    (CycleDetected, 409),
    (UnknownDependency, 409),
    (ReservationNotFound, 409),
    (TaskGateSystemError, 503),
]


def status_code_for(exc: TaskGateError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_details(exc: TaskGateError) -> dict:
    if isinstance(exc, ValidationError):
        return {"field": exc.field} if exc.field else {}
    if isinstance(exc, InsufficientCredit):
        return {"requested": exc.requested, "available": exc.available}
    if isinstance(exc, CycleDetected):
        return {"path": exc.path}
    if isinstance(exc, UnknownDependency):
        return {"missing": exc.missing}
    if isinstance(exc, InvalidTransition):
        return {"current_status": exc.current_status, "requested": exc.requested}
    return {}


async def taskgate_error_handler(request: Request, exc: TaskGateError) -> JSONResponse:
    """Render a domain error as ErrorResponse with its mapped status code."""
    body = ErrorResponse(code=exc.code, message=exc.message, details=_error_details(exc))
    return JSONResponse(status_code=status_code_for(exc), content=body.model_dump())


# ============================================================================
# Health & Config
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=VERSION)


@router.get("/task-types", response_model=list[TaskTypeResponse])
async def list_task_types(runtime: Runtime = Depends(get_runtime)):
    """Registered task types with their credit cost and approval default."""
    return [
        TaskTypeResponse(
            task_type=definition.task_type,
            name=definition.name,
            description=definition.description,
            credit_cost=definition.credit_cost,
            requires_approval=definition.requires_approval,
        )
        for definition in runtime.registry.task_types()
    ]


@router.get("/metrics")
async def get_metrics(runtime: Runtime = Depends(get_runtime)):
    snapshot = metrics.snapshot()
    circuit_stats = getattr(runtime.service_client, "circuit_stats", None)
    if circuit_stats is not None:
        snapshot["circuits"] = circuit_stats()
    return snapshot


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    request: CreateTaskRequest,
    engine: TaskGateEngine = Depends(get_engine),
):
    """
    Create a task.

    Validates inputs and dependencies and reserves the task's credit cost in
    one step; on any error nothing is stored and no credit is held.
    """
    task = await engine.create_task(
        owner_id=request.owner_id,
        task_type=request.task_type,
        title=request.title,
        inputs=request.inputs,
        description=request.description,
        priority=request.priority,
        dependencies=request.dependencies,
        draft=request.draft,
    )
    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=ListTasksResponse)
async def list_tasks(
    owner_id: Optional[str] = Query(None),
    status: Optional[TaskStatus] = Query(None),
    task_type: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = Query(None),
    engine: TaskGateEngine = Depends(get_engine),
):
    """List tasks, newest first."""
    tasks, next_cursor = await engine.list_tasks(
        owner_id=owner_id,
        status=status,
        task_type=task_type,
        limit=limit,
        cursor=cursor,
    )
    return ListTasksResponse(
        tasks=[TaskResponse.from_task(task) for task in tasks],
        next_cursor=next_cursor,
    )


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: UUID, engine: TaskGateEngine = Depends(get_engine)):
    return TaskResponse.from_task(await engine.get_task(task_id))


@router.get("/tasks/{task_id}/logs", response_model=TaskLogResponse)
async def get_task_logs(task_id: UUID, engine: TaskGateEngine = Depends(get_engine)):
    return TaskLogResponse(task_id=task_id, entries=await engine.get_task_logs(task_id))


@router.post("/tasks/{task_id}/submit", response_model=TaskResponse)
async def submit_task(task_id: UUID, engine: TaskGateEngine = Depends(get_engine)):
    return TaskResponse.from_task(await engine.submit_task(task_id))


@router.post("/tasks/{task_id}/approve", response_model=TaskResponse)
async def approve_task(task_id: UUID, engine: TaskGateEngine = Depends(get_engine)):
    return TaskResponse.from_task(await engine.approve_task(task_id))


@router.post("/tasks/{task_id}/request-approval", response_model=TaskResponse)
async def request_approval(
    task_id: UUID,
    request: ReasonRequest | None = None,
    engine: TaskGateEngine = Depends(get_engine),
):
    reason = request.reason if request else None
    return TaskResponse.from_task(await engine.request_approval(task_id, reason))


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(
    task_id: UUID,
    request: ReasonRequest | None = None,
    engine: TaskGateEngine = Depends(get_engine),
):
    """Cancel a task that has not started processing; its reservation is refunded."""
    reason = request.reason if request else None
    return TaskResponse.from_task(await engine.cancel_task(task_id, reason))


@router.put("/tasks/{task_id}/priority", response_model=TaskResponse)
async def update_priority(
    task_id: UUID,
    request: UpdatePriorityRequest,
    engine: TaskGateEngine = Depends(get_engine),
):
    return TaskResponse.from_task(await engine.update_priority(task_id, request.priority))


@router.put("/tasks/{task_id}/dependencies", response_model=TaskResponse)
async def set_dependencies(
    task_id: UUID,
    request: SetDependenciesRequest,
    engine: TaskGateEngine = Depends(get_engine),
):
    return TaskResponse.from_task(await engine.set_dependencies(task_id, request.dependencies))


@router.post("/tasks/{task_id}/dependencies/{dependency_id}", response_model=TaskResponse)
async def add_dependency(
    task_id: UUID,
    dependency_id: UUID,
    engine: TaskGateEngine = Depends(get_engine),
):
    return TaskResponse.from_task(await engine.add_dependency(task_id, dependency_id))


@router.delete("/tasks/{task_id}/dependencies/{dependency_id}", response_model=TaskResponse)
async def remove_dependency(
    task_id: UUID,
    dependency_id: UUID,
    engine: TaskGateEngine = Depends(get_engine),
):
    return TaskResponse.from_task(await engine.remove_dependency(task_id, dependency_id))


@router.get("/tasks/{task_id}/readiness", response_model=ReadinessResponse)
async def get_readiness(task_id: UUID, engine: TaskGateEngine = Depends(get_engine)):
    blocking = await engine.blocking_dependencies(task_id)
    return ReadinessResponse(task_id=task_id, ready=not blocking, blocking=blocking)


# ============================================================================
# Credits
# ============================================================================


@router.get("/accounts/{account_id}/credits", response_model=CreditsResponse)
async def get_credits(account_id: str, ledger: CreditLedger = Depends(get_ledger)):
    credits = await ledger.credits(account_id)
    return CreditsResponse(**credits.model_dump())


@router.post("/accounts/{account_id}/credits/topup", response_model=CreditsResponse)
async def topup_credits(
    account_id: str,
    request: TopupRequest,
    ledger: CreditLedger = Depends(get_ledger),
):
    await ledger.topup(account_id, request.amount, request.note)
    credits = await ledger.credits(account_id)
    return CreditsResponse(**credits.model_dump())


@router.get("/accounts/{account_id}/credits/entries", response_model=LedgerEntriesResponse)
async def list_ledger_entries(
    account_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ledger: CreditLedger = Depends(get_ledger),
):
    return LedgerEntriesResponse(
        account_id=account_id,
        entries=await ledger.entries(account_id, limit=limit),
    )


# ============================================================================
# Notifications
# ============================================================================


@router.get("/accounts/{account_id}/notifications", response_model=NotificationsResponse)
async def list_notifications(
    account_id: str,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    feed: NotificationFeed = Depends(get_feed),
):
    return NotificationsResponse(
        account_id=account_id,
        notifications=await feed.list(account_id, unread_only=unread_only, limit=limit),
    )


@router.post("/accounts/{account_id}/notifications/read", response_model=MarkReadResponse)
async def mark_notifications_read(
    account_id: str,
    request: MarkReadRequest | None = None,
    feed: NotificationFeed = Depends(get_feed),
):
    ids = request.notification_ids if request else None
    return MarkReadResponse(marked=await feed.mark_read(account_id, ids))


@router.get(
    "/accounts/{account_id}/notification-preferences",
    response_model=NotificationPreferencesResponse,
)
async def get_notification_preferences(
    account_id: str,
    feed: NotificationFeed = Depends(get_feed),
):
    return NotificationPreferencesResponse(
        account_id=account_id, preferences=await feed.preferences(account_id)
    )


@router.put(
    "/accounts/{account_id}/notification-preferences",
    response_model=NotificationPreferencesResponse,
)
async def update_notification_preferences(
    account_id: str,
    request: UpdatePreferencesRequest,
    feed: NotificationFeed = Depends(get_feed),
):
    return NotificationPreferencesResponse(
        account_id=account_id,
        preferences=await feed.update_preferences(account_id, request.preferences),
    )
