"""TaskGate engine - lifecycle state machine, scheduling, credits and execution.

Only the error taxonomy is re-exported here; processors import it, so this
package must not pull in the engine modules that import processors.
"""

from taskgate.engine.errors import (
    CycleDetected,
    InsufficientCredit,
    InvalidTransition,
    ProcessorFailure,
    ReservationNotFound,
    TaskGateError,
    TaskGateSystemError,
    TaskNotFound,
    UnknownDependency,
    UnknownTaskType,
    ValidationError,
)

__all__ = [
    "CycleDetected",
    "InsufficientCredit",
    "InvalidTransition",
    "ProcessorFailure",
    "ReservationNotFound",
    "TaskGateError",
    "TaskGateSystemError",
    "TaskNotFound",
    "UnknownDependency",
    "UnknownTaskType",
    "ValidationError",
]
