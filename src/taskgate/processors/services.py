"""Helpers for the service payloads processors exchange."""

from typing import Any

from taskgate.engine.errors import ProcessorFailure
from taskgate.integrations.service_client import ServiceClient, ServiceError

OPENAI = "openai"
DATAFORSEO = "dataforseo"

# DataForSEO status codes
DFS_OK = 20000
DFS_TASK_CREATED = 20100
DFS_TASK_IN_QUEUE = 40602
DFS_TASK_HANDED = 40601
DFS_IN_PROGRESS = {DFS_TASK_IN_QUEUE, DFS_TASK_HANDED}
DFS_ACCEPTED = {DFS_OK, DFS_TASK_CREATED}


def failure_from(exc: ServiceError) -> ProcessorFailure:
    return ProcessorFailure(exc.message, code=exc.code, details=exc.details())


async def chat_completion(
    client: ServiceClient,
    model: str,
    system: str,
    prompt: str,
    max_tokens: int,
    temperature: float = 0.7,
) -> str:
    """Run one chat completion and return the stripped message text."""
    response = await client.request(
        OPENAI,
        "chat/completions",
        {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        },
    )
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ServiceError(
            OPENAI, "chat/completions", "response has no message content", code="invalid_response"
        ) from None
    return (content or "").strip()


def dataforseo_task(response: dict[str, Any], operation: str) -> dict[str, Any]:
    """First task of a DataForSEO envelope, raising on envelope-level errors."""
    status = response.get("status_code")
    if status is not None and status != DFS_OK:
        raise ServiceError(
            DATAFORSEO, operation, response.get("status_message") or f"status {status}", code="api_error"
        )
    tasks = response.get("tasks") or []
    if not tasks or not isinstance(tasks[0], dict):
        raise ServiceError(DATAFORSEO, operation, "response has no tasks", code="invalid_response")
    return tasks[0]


def number(value: Any, default: float = 0.0) -> float:
    """Coerce a loosely typed numeric field."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def posted_task_id(posted: dict[str, Any]) -> str | None:
    """Id of a task DataForSEO accepted from task_post, or None if it was refused."""
    status = posted.get("status_code")
    if status is not None and status not in DFS_ACCEPTED:
        return None
    return posted.get("id") or None
