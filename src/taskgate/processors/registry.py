"""Processor registry - task type tag to processor and billing metadata."""

import logging
from dataclasses import dataclass, replace

from taskgate.config import Settings
from taskgate.engine.errors import UnknownTaskType
from taskgate.processors.base import Processor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskTypeDefinition:
    """Static description of a task type."""

    task_type: str
    name: str
    description: str
    credit_cost: int
    requires_approval: bool


class ProcessorRegistry:
    """Registry resolved once at startup.

    Register every processor, apply configuration overrides, then freeze.
    After freeze the registry is read-only.
    """

    def __init__(self):
        self._processors: dict[str, Processor] = {}
        self._definitions: dict[str, TaskTypeDefinition] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        task_type: str,
        processor: Processor,
        credit_cost: int,
        requires_approval: bool = False,
        name: str | None = None,
        description: str = "",
    ) -> TaskTypeDefinition:
        if self._frozen:
            raise RuntimeError("Processor registry is frozen")
        if not task_type:
            raise ValueError("task_type is required")
        if task_type in self._processors:
            raise ValueError(f"Processor already registered for {task_type}")
        if credit_cost < 1:
            raise ValueError(f"credit_cost must be positive, got {credit_cost}")

        definition = TaskTypeDefinition(
            task_type=task_type,
            name=name or task_type.replace("_", " ").title(),
            description=description,
            credit_cost=credit_cost,
            requires_approval=requires_approval,
        )
        self._processors[task_type] = processor
        self._definitions[task_type] = definition
        logger.debug("Registered processor for %s", task_type)
        return definition

    def apply_overrides(self, settings: Settings) -> None:
        """Apply per-deployment cost and approval overrides."""
        if self._frozen:
            raise RuntimeError("Processor registry is frozen")
        for override in settings.task_types:
            definition = self._definitions.get(override.task_type)
            if definition is None:
                logger.warning("Override for unregistered task type %s ignored", override.task_type)
                continue
            changes = {}
            if override.credit_cost is not None:
                changes["credit_cost"] = override.credit_cost
            if override.requires_approval is not None:
                changes["requires_approval"] = override.requires_approval
            self._definitions[override.task_type] = replace(definition, **changes)

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Processor registry frozen with %d task types", len(self._definitions))

    def get(self, task_type: str) -> Processor:
        try:
            return self._processors[task_type]
        except KeyError:
            raise UnknownTaskType(task_type) from None

    def definition(self, task_type: str) -> TaskTypeDefinition:
        try:
            return self._definitions[task_type]
        except KeyError:
            raise UnknownTaskType(task_type) from None

    def task_types(self) -> list[TaskTypeDefinition]:
        return [self._definitions[key] for key in sorted(self._definitions)]

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._processors
