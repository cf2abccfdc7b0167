"""Keyword research processor."""

import logging
from typing import Any

from taskgate.engine.errors import ValidationError
from taskgate.integrations.service_client import ServiceClient, ServiceError
from taskgate.models import Task
from taskgate.processors.base import Processor, ProcessorResult
from taskgate.processors.services import (
    DATAFORSEO,
    DFS_IN_PROGRESS,
    DFS_OK,
    dataforseo_task,
    failure_from,
    number,
    posted_task_id,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = 2840  # United States
DEFAULT_LANGUAGE = "en"
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

HIGH_VOLUME = 1000
LOW_COMPETITION = 0.3
HIGH_CPC = 1.0

POST_OPERATION = "v3/keywords_data/google_ads/keywords_for_keywords/task_post"
GET_OPERATION = "v3/keywords_data/google_ads/keywords_for_keywords/task_get/{task_id}"


def summarize_keywords(items: list[dict[str, Any]], limit: int) -> dict[str, Any]:
    """Build keyword list, averages and suggestion buckets from raw results."""
    keywords = []
    suggestions: dict[str, list[str]] = {"high_volume": [], "low_competition": [], "high_cpc": []}

    for item in items:
        data = item.get("keyword_data", item)
        keyword = data.get("keyword")
        if not keyword:
            continue
        volume = number(data.get("search_volume"))
        cpc = number(data.get("cpc"))
        competition = number(data.get("competition"))
        keywords.append(
            {
                "keyword": keyword,
                "search_volume": int(volume),
                "cpc": cpc,
                "competition": competition,
            }
        )
        if volume > HIGH_VOLUME:
            suggestions["high_volume"].append(keyword)
        if competition < LOW_COMPETITION:
            suggestions["low_competition"].append(keyword)
        if cpc > HIGH_CPC:
            suggestions["high_cpc"].append(keyword)
        if len(keywords) >= limit:
            break

    count = len(keywords)
    stats = {
        "total_keywords": count,
        "average_volume": sum(k["search_volume"] for k in keywords) / count if count else 0,
        "average_cpc": sum(k["cpc"] for k in keywords) / count if count else 0,
        "average_competition": sum(k["competition"] for k in keywords) / count if count else 0,
    }
    return {"keywords": keywords, "stats": stats, "suggestions": suggestions}


class KeywordResearchProcessor(Processor):
    """Expands a seed keyword through DataForSEO.

    Posting the task returns immediately; results are collected by poll.
    """

    task_type = "keyword_research"

    def __init__(self, client: ServiceClient, poll_after_seconds: float | None = None):
        self.client = client
        self.poll_after_seconds = poll_after_seconds

    def validate_inputs(self, inputs: dict[str, Any]) -> None:
        if not str(inputs.get("seed_keyword") or "").strip():
            raise ValidationError(
                "Seed keyword is required.", code="missing_seed_keyword", field="seed_keyword"
            )
        if "limit" in inputs:
            try:
                limit = int(inputs["limit"])
            except (TypeError, ValueError):
                raise ValidationError("Limit must be a number.", code="invalid_limit", field="limit") from None
            if not 1 <= limit <= MAX_LIMIT:
                raise ValidationError(
                    f"Limit must be between 1 and {MAX_LIMIT}.", code="invalid_limit", field="limit"
                )

    def _params(self, task: Task) -> dict[str, Any]:
        inputs = task.inputs
        return {
            "keyword": str(inputs["seed_keyword"]).strip(),
            "location_code": inputs.get("location") or DEFAULT_LOCATION,
            "language_code": inputs.get("language") or DEFAULT_LANGUAGE,
            "limit": int(inputs.get("limit") or DEFAULT_LIMIT),
        }

    async def process(self, task: Task) -> ProcessorResult:
        params = self._params(task)
        try:
            response = await self.client.request(
                DATAFORSEO,
                POST_OPERATION,
                [
                    {
                        "keywords": [params["keyword"]],
                        "location_code": params["location_code"],
                        "language_code": params["language_code"],
                        "tag": str(task.task_id),
                    }
                ],
            )
            posted = dataforseo_task(response, POST_OPERATION)
        except ServiceError as exc:
            raise failure_from(exc) from exc

        external_id = posted_task_id(posted)
        if not external_id:
            return ProcessorResult.failure(
                "task_creation_failed",
                posted.get("status_message") or "Failed to create DataForSEO task.",
                {"status_code": posted.get("status_code")},
            )
        logger.info("Task %s posted keyword research %s", task.task_id, external_id)
        return ProcessorResult.pending(external_id, self.poll_after_seconds)

    async def poll(self, task: Task) -> ProcessorResult:
        operation = GET_OPERATION.format(task_id=task.external_ref)
        try:
            response = await self.client.request(DATAFORSEO, operation, method="GET")
            result_task = dataforseo_task(response, operation)
        except ServiceError as exc:
            raise failure_from(exc) from exc

        status = result_task.get("status_code")
        if status in DFS_IN_PROGRESS:
            return ProcessorResult.pending(task.external_ref, self.poll_after_seconds)
        if status != DFS_OK:
            return ProcessorResult.failure(
                "api_error",
                result_task.get("status_message") or f"DataForSEO task status {status}",
                {"status_code": status},
            )

        params = self._params(task)
        outputs = summarize_keywords(result_task.get("result") or [], params["limit"])
        outputs["seed_keyword"] = params["keyword"]
        outputs["location"] = params["location_code"]
        outputs["language"] = params["language_code"]
        return ProcessorResult.success(outputs)
