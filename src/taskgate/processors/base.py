"""Processor contract and result type."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from taskgate.engine.errors import ProcessorFailure
from taskgate.models import OutcomeKind, Task, TaskError
from taskgate.utils.time import utc_now


class ProcessorResult(BaseModel):
    """What a processor reports back for one invocation."""

    kind: OutcomeKind
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[TaskError] = None
    external_ref: Optional[str] = None
    poll_after_seconds: Optional[float] = None

    @classmethod
    def success(cls, outputs: dict[str, Any]) -> "ProcessorResult":
        return cls(kind=OutcomeKind.SUCCESS, outputs=outputs)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "ProcessorResult":
        return cls(
            kind=OutcomeKind.FAILURE,
            error=TaskError(code=code, message=message, details=details or {}),
        )

    @classmethod
    def pending(cls, external_ref: str, poll_after_seconds: float | None = None) -> "ProcessorResult":
        """The work was accepted by an external service; poll for the result later."""
        return cls(
            kind=OutcomeKind.PENDING_EXTERNAL,
            external_ref=external_ref,
            poll_after_seconds=poll_after_seconds,
        )

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_pending(self) -> bool:
        return self.kind == OutcomeKind.PENDING_EXTERNAL


def stamp_outputs(outputs: dict[str, Any]) -> dict[str, Any]:
    """Copy outputs with a generated_at timestamp if the processor left none."""
    stamped = dict(outputs)
    stamped.setdefault("generated_at", utc_now().isoformat())
    return stamped


class Processor(ABC):
    """A pluggable unit that performs one task type.

    Processors validate inputs synchronously at creation time and do their
    work in ``process``. Long-running external work returns
    ``ProcessorResult.pending`` and is finished by later ``poll`` calls.
    Processors never change task status themselves.
    """

    def validate_inputs(self, inputs: dict[str, Any]) -> None:
        """Raise ValidationError for unacceptable inputs."""
        return None

    @abstractmethod
    async def process(self, task: Task) -> ProcessorResult:
        """Run the task."""

    async def poll(self, task: Task) -> ProcessorResult:
        """Check on an external result recorded by an earlier pending outcome."""
        raise ProcessorFailure(
            f"{type(self).__name__} does not support external results",
            code="poll_unsupported",
        )
