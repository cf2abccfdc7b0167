"""Lifecycle event fan-out and the in-app notification feed."""

from taskgate.notifications.bus import NotificationBus
from taskgate.notifications.feed import NotificationFeed

__all__ = ["NotificationBus", "NotificationFeed"]
