"""SEO audit processor."""

import logging
import math
import re
from typing import Any

from taskgate.engine.errors import ValidationError
from taskgate.integrations.service_client import ServiceClient, ServiceError
from taskgate.models import Task
from taskgate.processors.base import Processor, ProcessorResult
from taskgate.processors.services import (
    DATAFORSEO,
    DFS_IN_PROGRESS,
    DFS_OK,
    chat_completion,
    dataforseo_task,
    failure_from,
    number,
    posted_task_id,
)

logger = logging.getLogger(__name__)

DOMAIN_RE = re.compile(
    r"^([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$",
    re.IGNORECASE,
)

MIN_PAGES = 10
MAX_PAGES = 1000
DEFAULT_PAGES = 100

SEVERITIES = ("critical", "high", "medium", "low")
SEVERITY_WEIGHTS = {"critical": 10, "high": 5, "medium": 2, "low": 1}

MAX_OPPORTUNITIES = 20

POST_OPERATION = "v3/on_page/task_post"
SUMMARY_OPERATION = "v3/on_page/summary/{task_id}"
RANKED_KEYWORDS_OPERATION = "v3/dataforseo_labs/google/ranked_keywords/live"
COMPETITORS_OPERATION = "v3/dataforseo_labs/google/competitors_domain/live"
BACKLINKS_OPERATION = "v3/backlinks/backlinks/live"

# On-page check name -> (severity, title, recommendation)
CHECKS = {
    "is_http": (
        "critical",
        "Pages served without HTTPS",
        "Install an SSL certificate and migrate your website to HTTPS.",
    ),
    "is_broken": (
        "critical",
        "Broken pages",
        "Fix or redirect pages that return errors.",
    ),
    "high_loading_time": (
        "high",
        "Slow page load speed",
        "Optimize images, leverage browser caching, minify CSS/JS, and consider a CDN.",
    ),
    "no_description": (
        "high",
        "Missing meta descriptions",
        "Add unique, descriptive meta descriptions to all pages (150-160 characters).",
    ),
    "no_title": (
        "high",
        "Missing page titles",
        "Give every page a unique, descriptive title tag.",
    ),
    "duplicate_content": (
        "medium",
        "Duplicate content",
        "Implement canonical tags or consolidate similar content into single, comprehensive pages.",
    ),
    "low_content_rate": (
        "medium",
        "Thin content",
        "Expand thin content with valuable information that incorporates relevant keywords.",
    ),
    "no_h1_tag": (
        "medium",
        "Missing H1 headings",
        "Add one descriptive H1 heading to each page.",
    ),
    "no_image_alt": (
        "low",
        "Images missing alt text",
        "Add descriptive alt text to all images.",
    ),
    "title_too_long": (
        "low",
        "Page titles too long",
        "Keep titles under 60 characters.",
    ),
}

SUMMARY_TEMPLATE = (
    "SEO audit for %s completed with a score of %d/100. Found %d issues "
    "(%d critical, %d high priority, %d medium priority, %d low priority). "
    "Review the detailed report for specific recommendations to improve your SEO performance."
)


def is_valid_domain(value: Any) -> bool:
    return isinstance(value, str) and bool(DOMAIN_RE.match(value))


def audit_score(issues: dict[str, list]) -> int:
    deduction = sum(len(issues.get(severity, [])) * SEVERITY_WEIGHTS[severity] for severity in SEVERITIES)
    return max(0, 100 - deduction)


def keyword_potential(position: float, search_volume: float, cpc: float) -> float:
    """Room to climb x log-scaled volume x commercial intent."""
    position_factor = min((position - 1) / 10, 1)
    volume_factor = math.log10(max(10, search_volume))
    cpc_factor = min(cpc, 10) / 2
    return position_factor * volume_factor * (1 + cpc_factor)


def keyword_opportunities(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keywords ranking past page one with real volume, best potential first."""
    opportunities = []
    for item in items:
        keyword = item.get("keyword")
        if not keyword:
            continue
        position = number(item.get("position"))
        volume = number(item.get("search_volume"))
        cpc = number(item.get("cpc"))
        if position > 10 and volume > 100:
            opportunities.append(
                {
                    "keyword": keyword,
                    "position": position,
                    "search_volume": volume,
                    "cpc": cpc,
                    "potential": keyword_potential(position, volume, cpc),
                }
            )
    opportunities.sort(key=lambda item: item["potential"], reverse=True)
    return opportunities[:MAX_OPPORTUNITIES]


def issues_from_checks(checks: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    issues: dict[str, list[dict[str, Any]]] = {severity: [] for severity in SEVERITIES}
    for check, (severity, title, recommendation) in CHECKS.items():
        pages = int(number(checks.get(check)))
        if pages > 0:
            issues[severity].append(
                {
                    "check": check,
                    "title": title,
                    "pages": pages,
                    "recommendation": recommendation,
                }
            )
    return issues


def template_summary(domain: str, score: int, issues: dict[str, list]) -> str:
    counts = [len(issues[severity]) for severity in SEVERITIES]
    return SUMMARY_TEMPLATE % (domain, score, sum(counts), *counts)


class SeoAuditProcessor(Processor):
    """Crawls a site with the DataForSEO on-page API and scores what it finds.

    The crawl runs remotely; poll checks crawl progress and, once finished,
    gathers keyword opportunities, competitor data and a written summary.
    Enrichment failures degrade the report instead of failing the task.
    """

    task_type = "seo_audit"

    def __init__(
        self,
        client: ServiceClient,
        model: str = "gpt-3.5-turbo",
        poll_after_seconds: float | None = None,
    ):
        self.client = client
        self.model = model
        self.poll_after_seconds = poll_after_seconds

    def validate_inputs(self, inputs: dict[str, Any]) -> None:
        domain = inputs.get("domain")
        if not domain:
            raise ValidationError(
                "Domain is required for SEO audit.", code="missing_domain", field="domain"
            )
        if not is_valid_domain(domain):
            raise ValidationError(
                "Please enter a valid domain name (e.g., example.com).",
                code="invalid_domain",
                field="domain",
            )

        if "max_pages" in inputs:
            try:
                max_pages = int(inputs["max_pages"])
            except (TypeError, ValueError):
                max_pages = 0
            if not MIN_PAGES <= max_pages <= MAX_PAGES:
                raise ValidationError(
                    f"Max pages must be between {MIN_PAGES} and {MAX_PAGES}.",
                    code="invalid_max_pages",
                    field="max_pages",
                )

        competitors = inputs.get("competitors")
        if competitors is not None:
            if not isinstance(competitors, list):
                raise ValidationError(
                    "Competitors must be a list of domains.",
                    code="invalid_competitor",
                    field="competitors",
                )
            for competitor in competitors:
                if not is_valid_domain(competitor):
                    raise ValidationError(
                        f"Invalid competitor domain: {competitor}",
                        code="invalid_competitor",
                        field="competitors",
                    )

    async def process(self, task: Task) -> ProcessorResult:
        domain = task.inputs["domain"]
        max_pages = int(task.inputs.get("max_pages") or DEFAULT_PAGES)
        try:
            response = await self.client.request(
                DATAFORSEO,
                POST_OPERATION,
                [
                    {
                        "target": domain,
                        "max_crawl_pages": max_pages,
                        "max_crawl_depth": 2,
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
                posted.get("status_message") or "Failed to create DataForSEO audit task.",
                {"status_code": posted.get("status_code")},
            )
        logger.info("Task %s started crawl %s for %s", task.task_id, external_id, domain)
        return ProcessorResult.pending(external_id, self.poll_after_seconds)

    async def poll(self, task: Task) -> ProcessorResult:
        operation = SUMMARY_OPERATION.format(task_id=task.external_ref)
        try:
            response = await self.client.request(DATAFORSEO, operation, method="GET")
            summary_task = dataforseo_task(response, operation)
        except ServiceError as exc:
            raise failure_from(exc) from exc

        status = summary_task.get("status_code")
        if status in DFS_IN_PROGRESS:
            return ProcessorResult.pending(task.external_ref, self.poll_after_seconds)
        if status != DFS_OK:
            return ProcessorResult.failure(
                "audit_api_error",
                summary_task.get("status_message") or f"DataForSEO task status {status}",
                {"status_code": status},
            )

        result = (summary_task.get("result") or [{}])[0] or {}
        if result.get("crawl_progress") not in (None, "finished"):
            return ProcessorResult.pending(task.external_ref, self.poll_after_seconds)

        domain = task.inputs["domain"]
        issues = issues_from_checks((result.get("page_metrics") or {}).get("checks") or {})
        recommendations = [
            {"title": issue["title"], "recommendation": issue["recommendation"], "severity": severity}
            for severity in SEVERITIES
            for issue in issues[severity]
        ]
        score = audit_score(issues)
        crawl_status = result.get("crawl_status") or {}
        opportunities = await self._keyword_opportunities(domain)

        outputs = {
            "domain": domain,
            "issues": issues,
            "recommendations": recommendations,
            "keyword_opportunities": opportunities,
            "competitor_analysis": await self._competitor_analysis(
                domain, task.inputs.get("competitors") or []
            ),
            "stats": {
                "pages_analyzed": int(number(crawl_status.get("pages_crawled"))),
                "issues_found": sum(len(issues[severity]) for severity in SEVERITIES),
                "score": score,
            },
        }
        outputs["summary"] = await self._summary(domain, score, issues, opportunities)
        return ProcessorResult.success(outputs)

    async def _keyword_opportunities(self, domain: str) -> list[dict[str, Any]]:
        try:
            response = await self.client.request(
                DATAFORSEO, RANKED_KEYWORDS_OPERATION, [{"target": domain, "limit": 50}]
            )
            result = (dataforseo_task(response, RANKED_KEYWORDS_OPERATION).get("result") or [{}])[0]
        except ServiceError as exc:
            logger.warning("Keyword lookup for %s failed: %s", domain, exc)
            return []
        items = []
        for entry in (result or {}).get("items") or []:
            keyword_data = entry.get("keyword_data") or {}
            info = keyword_data.get("keyword_info") or {}
            serp = (entry.get("ranked_serp_element") or {}).get("serp_item") or {}
            items.append(
                {
                    "keyword": keyword_data.get("keyword") or entry.get("keyword"),
                    "position": serp.get("rank_absolute", entry.get("position")),
                    "search_volume": info.get("search_volume", entry.get("search_volume")),
                    "cpc": info.get("cpc", entry.get("cpc")),
                }
            )
        return keyword_opportunities(items)

    async def _competitor_analysis(self, domain: str, competitors: list[str]) -> list[dict[str, Any]]:
        analysis = []
        if competitors:
            for competitor in competitors:
                try:
                    response = await self.client.request(
                        DATAFORSEO, BACKLINKS_OPERATION, [{"target": competitor, "limit": 20}]
                    )
                    result = (dataforseo_task(response, BACKLINKS_OPERATION).get("result") or [{}])[0]
                except ServiceError as exc:
                    logger.warning("Backlink lookup for %s failed: %s", competitor, exc)
                    continue
                analysis.append(
                    {
                        "domain": competitor,
                        "backlinks_sample": len((result or {}).get("items") or []),
                    }
                )
            return analysis

        try:
            response = await self.client.request(
                DATAFORSEO, COMPETITORS_OPERATION, [{"target": domain, "limit": 5}]
            )
            result = (dataforseo_task(response, COMPETITORS_OPERATION).get("result") or [{}])[0]
        except ServiceError as exc:
            logger.warning("Competitor lookup for %s failed: %s", domain, exc)
            return analysis
        for item in (result or {}).get("items") or []:
            if item.get("domain"):
                analysis.append(
                    {
                        "domain": item["domain"],
                        "intersections": int(number(item.get("intersections"))),
                    }
                )
        return analysis

    async def _summary(
        self,
        domain: str,
        score: int,
        issues: dict[str, list],
        opportunities: list[dict[str, Any]],
    ) -> str:
        fallback = template_summary(domain, score, issues)
        if not self.client.is_configured("openai"):
            return fallback

        prompt = [
            f"Generate a concise SEO audit summary for the website {domain}.",
            f"The website has an SEO score of {score}/100.",
        ]
        prompt += [
            f"{severity.capitalize()} issues: {len(issues[severity])}." for severity in SEVERITIES
        ]
        if opportunities:
            top = ", ".join(item["keyword"] for item in opportunities[:5])
            prompt.append(f"Top keyword opportunities: {top}.")
        prompt.append(
            "Please provide a summary (about 200 words) that highlights the main findings and "
            "overall SEO health of the website, along with a few high-level recommendations. "
            "Use a professional tone."
        )
        try:
            summary = await chat_completion(
                self.client,
                self.model,
                system=(
                    "You are an expert SEO consultant who provides clear, actionable insights "
                    "based on website audit data."
                ),
                prompt=" ".join(prompt),
                max_tokens=500,
            )
        except ServiceError as exc:
            logger.warning("AI summary for %s failed: %s", domain, exc)
            return fallback
        return summary or fallback
