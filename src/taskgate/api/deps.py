"""API dependencies."""

from fastapi import Request

from taskgate.engine.core import TaskGateEngine
from taskgate.engine.ledger import CreditLedger
from taskgate.notifications.feed import NotificationFeed
from taskgate.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Runtime built by the application lifespan."""
    return request.app.state.runtime


def get_engine(request: Request) -> TaskGateEngine:
    return get_runtime(request).engine


def get_ledger(request: Request) -> CreditLedger:
    return get_runtime(request).ledger


def get_feed(request: Request) -> NotificationFeed:
    return get_runtime(request).feed
