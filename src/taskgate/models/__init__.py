"""TaskGate data models."""

from taskgate.models.enums import LedgerEntryKind, LogLevel, OutcomeKind, TaskStatus
from taskgate.models.events import LifecycleEvent, Notification
from taskgate.models.ledger import AccountCredits, CreditLedgerEntry
from taskgate.models.task import VALID_TRANSITIONS, Task, TaskError, TaskLogEntry

__all__ = [
    "AccountCredits",
    "CreditLedgerEntry",
    "LedgerEntryKind",
    "LifecycleEvent",
    "LogLevel",
    "Notification",
    "OutcomeKind",
    "Task",
    "TaskError",
    "TaskLogEntry",
    "TaskStatus",
    "VALID_TRANSITIONS",
]
