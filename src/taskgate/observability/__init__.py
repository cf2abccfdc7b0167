"""Observability helpers for TaskGate."""

from taskgate.observability.metrics import metrics

__all__ = ["metrics"]
