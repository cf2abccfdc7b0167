"""External service integrations and resilience patterns."""

from taskgate.integrations.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitBreakerStats,
    CircuitState,
)
from taskgate.integrations.service_client import HttpServiceClient, ServiceClient, ServiceError

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitBreakerStats",
    "CircuitState",
    "HttpServiceClient",
    "ServiceClient",
    "ServiceError",
]
