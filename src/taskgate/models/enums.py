"""TaskGate enumerations."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVAL_REQUIRED = "approval_required"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def terminal_states(cls) -> set["TaskStatus"]:
        """Return terminal states."""
        return {cls.COMPLETED, cls.FAILED, cls.CANCELED}

    @classmethod
    def pre_admission_states(cls) -> set["TaskStatus"]:
        """States in which the owner may still edit or cancel the task."""
        return {cls.DRAFT, cls.PENDING, cls.APPROVAL_REQUIRED}

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in self.terminal_states()


class LogLevel(str, Enum):
    """Task log entry level."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LedgerEntryKind(str, Enum):
    """Kinds of credit ledger entries."""

    RESERVE = "reserve"
    DEBIT = "debit"
    REFUND = "refund"
    TOPUP = "topup"

    @classmethod
    def settling_kinds(cls) -> set["LedgerEntryKind"]:
        """Entries that close an outstanding reservation."""
        return {cls.DEBIT, cls.REFUND}


class OutcomeKind(str, Enum):
    """Result kind reported by a processor."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING_EXTERNAL = "pending_external"
