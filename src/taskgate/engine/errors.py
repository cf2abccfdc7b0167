"""TaskGate engine errors."""


class TaskGateError(Exception):
    """Base error for TaskGate operations."""

    def __init__(self, message: str, code: str = "TASKGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(TaskGateError):
    """Bad inputs, rejected before any credit is touched."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", field: str | None = None):
        super().__init__(message, code)
        self.field = field


class UnknownTaskType(ValidationError):
    """No processor is registered for the task type."""

    def __init__(self, task_type: str):
        super().__init__(f"Unknown task type: {task_type}", "UNKNOWN_TASK_TYPE", "task_type")
        self.task_type = task_type


class TaskNotFound(TaskGateError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class InsufficientCredit(TaskGateError):
    """Account cannot cover the requested reservation."""

    def __init__(self, account_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient credit for account {account_id}: "
            f"requested {requested}, available {available}",
            "INSUFFICIENT_CREDIT",
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class ReservationNotFound(TaskGateError):
    """A debit or refund referenced a task with no reservation."""

    def __init__(self, account_id: str, reference_task_id: str):
        super().__init__(
            f"No reservation for task {reference_task_id} on account {account_id}",
            "RESERVATION_NOT_FOUND",
        )
        self.account_id = account_id
        self.reference_task_id = reference_task_id


class CycleDetected(TaskGateError):
    """Proposed dependencies would make the graph cyclic."""

    def __init__(self, task_id: str, path: list[str]):
        super().__init__(
            f"Dependency cycle for task {task_id}: {' -> '.join(path)}",
            "CYCLE_DETECTED",
        )
        self.task_id = task_id
        self.path = path


class UnknownDependency(TaskGateError):
    """Proposed dependencies reference tasks that do not exist."""

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Unknown dependency task(s): {', '.join(missing)}",
            "UNKNOWN_DEPENDENCY",
        )
        self.missing = missing


class InvalidTransition(TaskGateError):
    """Invalid task state transition."""

    def __init__(self, current_status: str, requested: str, detail: str | None = None):
        message = f"Invalid transition from {current_status} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "INVALID_TRANSITION")
        self.current_status = current_status
        self.requested = requested


class ProcessorFailure(TaskGateError):
    """External call or processing logic failed."""

    def __init__(self, message: str, code: str = "PROCESSOR_FAILURE", details: dict | None = None):
        super().__init__(message, code)
        self.details = details or {}


class TaskGateSystemError(TaskGateError):
    """Store or ledger unavailable; the enclosing operation is safe to retry."""

    def __init__(self, message: str = "Task store unavailable"):
        super().__init__(message, "SYSTEM_ERROR")
