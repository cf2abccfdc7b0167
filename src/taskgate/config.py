"""TaskGate configuration management."""

from enum import Enum
from typing import Any, Optional

import json

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class TaskTypeOverride(BaseModel):
    """Per-deployment override of a task type's billing and approval policy."""

    model_config = ConfigDict(extra="ignore")

    task_type: str = Field(..., description="Task type tag to override")
    credit_cost: Optional[int] = Field(default=None, ge=1)
    requires_approval: Optional[bool] = None


class Settings(BaseSettings):
    """TaskGate configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="TASKGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # General
    env: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./taskgate.db"

    # Execution engine
    worker_count: int = Field(default=4, ge=1, description="Fixed worker pool size")
    dispatch_interval_seconds: float = Field(
        default=1.0, gt=0, description="Idle wait between scheduler passes"
    )
    processor_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Deadline for one processor invocation"
    )
    external_poll_interval_seconds: float = Field(
        default=30.0, ge=0, description="Default delay before polling an external result"
    )
    external_result_timeout_seconds: float = Field(
        default=3600.0, gt=0, description="Max wait for an external result after admission"
    )
    recover_interrupted_on_start: bool = Field(
        default=True,
        description="Fail tasks left in processing by a previous run",
    )

    # Scheduling
    priority_min: int = 0
    priority_max: int = 100
    default_priority: int = 50
    higher_priority_first: bool = Field(
        default=True, description="Larger priority values are admitted first"
    )

    # Credits
    low_credit_threshold: int = Field(
        default=10, ge=0, description="Balance below which credits_low is raised"
    )

    # Approval policy
    approval_required_accounts: list[str] = Field(
        default_factory=list,
        description="Accounts whose tasks always need human approval",
    )
    approval_exempt_accounts: list[str] = Field(
        default_factory=list,
        description="Accounts whose tasks never need approval",
    )

    # Task type overrides
    task_types: list[TaskTypeOverride] = Field(default_factory=list)

    # External services
    openai_endpoint: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    dataforseo_endpoint: Optional[str] = None
    dataforseo_api_key: Optional[str] = None
    service_timeout_seconds: float = Field(default=30.0, gt=0)

    # Service circuit breaker
    circuit_breaker_enabled: bool = Field(
        default=True, description="Enable circuit breaker for external service calls"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Failures before opening circuit"
    )
    circuit_breaker_timeout_seconds: int = Field(
        default=60, description="Seconds before attempting half-open"
    )
    circuit_breaker_half_open_max_calls: int = Field(
        default=3, description="Test calls in half-open state"
    )
    circuit_breaker_success_threshold: int = Field(
        default=2, description="Successes to close from half-open"
    )

    # Pagination
    default_list_limit: int = Field(default=50, description="Default list limit")
    max_list_limit: int = Field(default=200, description="Max list limit")

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Validators
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate async database URL format."""
        if not v.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
            raise ValueError(
                "database_url must use an async driver "
                "(sqlite+aiosqlite:// or postgresql+asyncpg://)"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("openai_endpoint", "dataforseo_endpoint")
    @classmethod
    def validate_service_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate service endpoints are HTTP(S)."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got {v}")
        return v

    @field_validator("task_types", mode="before")
    @classmethod
    def parse_task_types(cls, v: Any) -> list[TaskTypeOverride]:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            return json.loads(v)
        return v

    @model_validator(mode="after")
    def validate_priority_bounds(self) -> "Settings":
        """default_priority must sit inside [priority_min, priority_max]."""
        if self.priority_min > self.priority_max:
            raise ValueError("priority_min must not exceed priority_max")
        if not self.priority_min <= self.default_priority <= self.priority_max:
            raise ValueError(
                f"default_priority {self.default_priority} outside "
                f"[{self.priority_min}, {self.priority_max}]"
            )
        return self

    def clamp_priority(self, priority: int | None) -> int:
        """Clamp a caller-supplied priority into the configured range."""
        if priority is None:
            return self.default_priority
        return max(self.priority_min, min(self.priority_max, int(priority)))

    def get_task_type_override(self, task_type: str) -> Optional[TaskTypeOverride]:
        """Return the configured override for a task type."""
        for override in self.task_types:
            if override.task_type == task_type:
                return override
        return None

    def service_endpoints(self) -> dict[str, str]:
        """Configured external service base URLs keyed by service name."""
        endpoints = {}
        if self.openai_endpoint:
            endpoints["openai"] = self.openai_endpoint
        if self.dataforseo_endpoint:
            endpoints["dataforseo"] = self.dataforseo_endpoint
        return endpoints

    def service_api_keys(self) -> dict[str, str]:
        keys = {}
        if self.openai_api_key:
            keys["openai"] = self.openai_api_key
        if self.dataforseo_api_key:
            keys["dataforseo"] = self.dataforseo_api_key
        return keys


settings = Settings()
