"""Request/response client for the external services processors call."""

import logging
from typing import Any, Optional, Protocol

import httpx

from taskgate.config import Settings
from taskgate.integrations.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
)
from taskgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """An external service call failed or is not available."""

    def __init__(
        self,
        service: str,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        code: str = "service_error",
    ):
        self.service = service
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(f"{service} {operation}: {message}")

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"service": self.service, "operation": self.operation}
        if self.status_code is not None:
            details["status_code"] = self.status_code
        return details


class ServiceClient(Protocol):
    """Generic capability processors use to reach external services."""

    def is_configured(self, service: str) -> bool: ...

    async def request(
        self,
        service: str,
        operation: str,
        payload: Any = None,
        method: str = "POST",
    ) -> dict[str, Any]: ...


class HttpServiceClient:
    """
    JSON-over-HTTP client with one circuit breaker per service.

    Operations are paths relative to the service's configured base URL.
    Credentials of the form ``login:password`` are sent as basic auth,
    anything else as a bearer token.

    Usage:
        client = HttpServiceClient.from_settings(settings)
        data = await client.request("openai", "chat/completions", {...})
    """

    def __init__(
        self,
        endpoints: dict[str, str],
        api_keys: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        breaker_config: CircuitBreakerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoints = {name: url.rstrip("/") for name, url in endpoints.items()}
        self.api_keys = api_keys or {}
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._breakers: dict[str, CircuitBreaker] = {}
        if breaker_config is not None:
            for name in self.endpoints:
                self._breakers[name] = CircuitBreaker(name, breaker_config)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "HttpServiceClient":
        breaker_config = None
        if settings.circuit_breaker_enabled:
            breaker_config = CircuitBreakerConfig.from_settings(settings)
        return cls(
            endpoints=settings.service_endpoints(),
            api_keys=settings.service_api_keys(),
            timeout_seconds=settings.service_timeout_seconds,
            breaker_config=breaker_config,
            transport=transport,
        )

    def is_configured(self, service: str) -> bool:
        return service in self.endpoints

    async def request(
        self,
        service: str,
        operation: str,
        payload: Any = None,
        method: str = "POST",
    ) -> dict[str, Any]:
        if service not in self.endpoints:
            raise ServiceError(
                service, operation, "service is not configured", code="service_unavailable"
            )

        breaker = self._breakers.get(service)
        try:
            if breaker:
                data = await breaker.call(self._send, service, operation, payload, method)
            else:
                data = await self._send(service, operation, payload, method)
        except CircuitBreakerOpen as exc:
            metrics.inc_counter(f"service.{service}.rejected")
            raise ServiceError(
                service,
                operation,
                f"circuit open, retry after {exc.retry_after}s",
                code="service_unavailable",
            ) from exc
        except httpx.HTTPStatusError as exc:
            metrics.inc_counter(f"service.{service}.error")
            raise ServiceError(
                service,
                operation,
                f"HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            metrics.inc_counter(f"service.{service}.error")
            raise ServiceError(service, operation, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            metrics.inc_counter(f"service.{service}.error")
            raise ServiceError(
                service, operation, "invalid JSON response", code="invalid_response"
            ) from exc

        metrics.inc_counter(f"service.{service}.ok")
        return data

    async def _send(
        self,
        service: str,
        operation: str,
        payload: Any,
        method: str,
    ) -> dict[str, Any]:
        url = f"{self.endpoints[service]}/{operation.lstrip('/')}"
        headers = {"Content-Type": "application/json"}
        auth = None
        key = self.api_keys.get(service)
        if key and ":" in key:
            login, password = key.split(":", 1)
            auth = httpx.BasicAuth(login, password)
        elif key:
            headers["Authorization"] = f"Bearer {key}"

        logger.debug("%s %s", method, url)
        with metrics.timer(f"service.{service}.duration_ms"):
            response = await self._client.request(
                method,
                url,
                json=payload if method != "GET" else None,
                headers=headers,
                auth=auth,
            )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return data

    def circuit_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.stats.as_dict() for name, breaker in self._breakers.items()}

    async def aclose(self) -> None:
        await self._client.aclose()
