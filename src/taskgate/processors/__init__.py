"""Task processors."""

from taskgate.processors.base import Processor, ProcessorResult
from taskgate.processors.builtin import build_default_registry, register_builtin_processors
from taskgate.processors.registry import ProcessorRegistry, TaskTypeDefinition

__all__ = [
    "Processor",
    "ProcessorRegistry",
    "ProcessorResult",
    "TaskTypeDefinition",
    "build_default_registry",
    "register_builtin_processors",
]
