"""
Every module imports cleanly and its annotations resolve.
"""

import importlib
import typing

import pytest

MODULES = [
    "taskgate.api.deps",
    "taskgate.api.router",
    "taskgate.api.schemas",
    "taskgate.approval",
    "taskgate.config",
    "taskgate.db",
    "taskgate.db.base",
    "taskgate.db.repositories",
    "taskgate.db.tables",
    "taskgate.engine",
    "taskgate.engine.core",
    "taskgate.engine.dependencies",
    "taskgate.engine.errors",
    "taskgate.engine.executor",
    "taskgate.engine.ledger",
    "taskgate.engine.locks",
    "taskgate.engine.scheduler",
    "taskgate.integrations.circuit_breaker",
    "taskgate.integrations.service_client",
    "taskgate.main",
    "taskgate.models",
    "taskgate.notifications.bus",
    "taskgate.notifications.feed",
    "taskgate.observability.metrics",
    "taskgate.processors",
    "taskgate.processors.builtin",
    "taskgate.processors.content_generation",
    "taskgate.processors.keyword_research",
    "taskgate.processors.seo_audit",
    "taskgate.processors.services",
    "taskgate.runtime",
    "taskgate.utils.time",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    assert importlib.import_module(name)


def test_annotations_after_list_methods_resolve():
    """Classes with a ``list`` method still annotate with the builtin list."""
    from taskgate.db.repositories import LedgerRepository, NotificationRepository, TaskRepository
    from taskgate.notifications.feed import NotificationFeed

    hints = typing.get_type_hints(TaskRepository.list_interrupted)
    assert typing.get_origin(hints["return"]) is list

    hints = typing.get_type_hints(TaskRepository.list_awaiting_external)
    assert typing.get_origin(hints["return"]) is list

    hints = typing.get_type_hints(LedgerRepository.list)
    assert typing.get_origin(hints["return"]) is list

    hints = typing.get_type_hints(NotificationRepository.mark_read)
    assert hints["return"] is int

    hints = typing.get_type_hints(NotificationFeed.mark_read)
    assert hints["return"] is int
