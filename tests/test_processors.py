"""
Built-in processors driven against scripted OpenAI and DataForSEO responses.
"""

from uuid import uuid4

import pytest

from taskgate.engine.errors import ProcessorFailure, ValidationError
from taskgate.integrations.service_client import ServiceError
from taskgate.models import OutcomeKind, Task
from taskgate.processors import build_default_registry
from taskgate.processors import keyword_research, seo_audit
from taskgate.processors.content_generation import (
    ContentGenerationProcessor,
    max_tokens_for,
    temperature_for,
)
from taskgate.processors.keyword_research import KeywordResearchProcessor
from taskgate.processors.seo_audit import SeoAuditProcessor, audit_score, keyword_opportunities
from taskgate.processors.services import posted_task_id
from taskgate.utils.time import utc_now

from conftest import ACCOUNT, make_settings
from fakes import FakeServiceClient

CHAT = "chat/completions"


def _task(task_type, inputs, external_ref=None):
    now = utc_now()
    return Task(
        task_id=uuid4(),
        owner_id=ACCOUNT,
        task_type=task_type,
        title="t",
        inputs=inputs,
        credit_cost=5,
        priority=50,
        external_ref=external_ref,
        created_at=now,
        updated_at=now,
    )


def _chat(content):
    return {"choices": [{"message": {"content": content}}]}


def _dfs(*tasks, status_code=20000):
    return {"status_code": status_code, "tasks": list(tasks)}


# ============================================================================
# Registry
# ============================================================================


def test_default_registry_types_and_costs(tmp_path):
    registry = build_default_registry(make_settings(tmp_path), FakeServiceClient())

    definitions = {d.task_type: d for d in registry.task_types()}
    assert sorted(definitions) == ["content_generation", "keyword_research", "seo_audit"]
    assert definitions["content_generation"].credit_cost == 10
    assert definitions["content_generation"].requires_approval is True
    assert definitions["keyword_research"].credit_cost == 5
    assert definitions["keyword_research"].requires_approval is False
    assert definitions["seo_audit"].credit_cost == 15


def test_default_registry_applies_overrides(tmp_path):
    settings = make_settings(
        tmp_path,
        task_types=[
            {"task_type": "seo_audit", "credit_cost": 20},
            {"task_type": "not_registered", "credit_cost": 3},
        ],
    )
    registry = build_default_registry(settings, FakeServiceClient())

    assert registry.definition("seo_audit").credit_cost == 20
    assert "not_registered" not in registry


# ============================================================================
# Content generation
# ============================================================================


@pytest.mark.parametrize(
    "inputs, code",
    [
        ({}, "missing_topic"),
        ({"topic": "   "}, "missing_topic"),
        ({"topic": "coffee", "content_type": "poem"}, "invalid_content_type"),
        ({"topic": "coffee", "tone": "angry"}, "invalid_tone"),
        ({"topic": "coffee", "word_count": 50}, "invalid_word_count"),
        ({"topic": "coffee", "word_count": "lots"}, "invalid_word_count"),
        ({"topic": "coffee", "keywords": "beans, roast"}, "invalid_keywords"),
    ],
)
def test_content_generation_rejects_bad_inputs(inputs, code):
    processor = ContentGenerationProcessor(FakeServiceClient())
    with pytest.raises(ValidationError) as exc_info:
        processor.validate_inputs(inputs)
    assert exc_info.value.code == code


def test_content_generation_accepts_full_inputs():
    ContentGenerationProcessor(FakeServiceClient()).validate_inputs(
        {
            "topic": "coffee",
            "content_type": "email",
            "tone": "casual",
            "word_count": "300",
            "keywords": ["beans"],
        }
    )


def test_token_budget_and_temperature():
    assert max_tokens_for(800) == int(800 * 1.3 * 1.2)
    assert max_tokens_for(3000) == 4000
    assert temperature_for("technical") == 0.3
    assert temperature_for("unheard-of") == 0.7


@pytest.mark.asyncio
async def test_content_title_comes_from_markdown_heading():
    client = FakeServiceClient()
    client.respond(
        "openai",
        CHAT,
        _chat("# Brewing Better Coffee\n\nGrind fresh beans every morning."),
        _chat('"A short guide to brewing coffee."'),
    )
    processor = ContentGenerationProcessor(client)

    result = await processor.process(_task("content_generation", {"topic": "coffee"}))

    assert result.is_success
    assert result.outputs["title"] == "Brewing Better Coffee"
    assert result.outputs["meta_description"] == "A short guide to brewing coffee."
    assert result.outputs["content_type"] == "blog_post"
    assert len(client.calls_to("openai")) == 2

    first_payload = client.calls[0][2]
    assert first_payload["max_tokens"] == max_tokens_for(800)
    assert first_payload["temperature"] == 0.5


@pytest.mark.asyncio
async def test_content_title_falls_back_to_a_second_completion():
    client = FakeServiceClient()
    client.respond(
        "openai",
        CHAT,
        _chat("Plain text content."),
        _chat("'Coffee 101'"),
        _chat("Everything about coffee."),
    )
    processor = ContentGenerationProcessor(client)

    result = await processor.process(_task("content_generation", {"topic": "coffee"}))

    assert result.outputs["title"] == "Coffee 101"
    assert result.outputs["stats"] == {"word_count": 3, "character_count": 19, "reading_time": 1}
    assert len(client.calls_to("openai")) == 3


@pytest.mark.asyncio
async def test_content_empty_completion_fails():
    client = FakeServiceClient()
    client.respond("openai", CHAT, _chat("   "))

    result = await ContentGenerationProcessor(client).process(
        _task("content_generation", {"topic": "coffee"})
    )

    assert result.kind == OutcomeKind.FAILURE
    assert result.error.code == "invalid_response"


@pytest.mark.asyncio
async def test_content_service_error_becomes_processor_failure():
    client = FakeServiceClient()
    client.respond(
        "openai", CHAT, ServiceError("openai", CHAT, "rate limited", status_code=429)
    )

    with pytest.raises(ProcessorFailure) as exc_info:
        await ContentGenerationProcessor(client).process(
            _task("content_generation", {"topic": "coffee"})
        )

    assert exc_info.value.code == "service_error"
    assert exc_info.value.details == {"service": "openai", "operation": CHAT, "status_code": 429}


# ============================================================================
# DataForSEO task posting
# ============================================================================


def test_posted_task_id_accepts_created_and_ok():
    assert posted_task_id({"id": "abc", "status_code": 20100}) == "abc"
    assert posted_task_id({"id": "abc", "status_code": 20000}) == "abc"
    assert posted_task_id({"id": "abc"}) == "abc"


def test_posted_task_id_refuses_error_status_or_missing_id():
    assert posted_task_id({"id": "abc", "status_code": 40501}) is None
    assert posted_task_id({"status_code": 20100}) is None
    assert posted_task_id({"id": "", "status_code": 20100}) is None


# ============================================================================
# Keyword research
# ============================================================================


def test_keyword_research_validation():
    processor = KeywordResearchProcessor(FakeServiceClient())
    with pytest.raises(ValidationError) as exc_info:
        processor.validate_inputs({"seed_keyword": " "})
    assert exc_info.value.code == "missing_seed_keyword"

    with pytest.raises(ValidationError) as exc_info:
        processor.validate_inputs({"seed_keyword": "coffee", "limit": 5000})
    assert exc_info.value.code == "invalid_limit"

    processor.validate_inputs({"seed_keyword": "coffee", "limit": "10"})


@pytest.mark.asyncio
async def test_keyword_research_posts_and_goes_pending():
    client = FakeServiceClient()
    client.respond(
        "dataforseo", keyword_research.POST_OPERATION, _dfs({"id": "kw-1", "status_code": 20100})
    )
    processor = KeywordResearchProcessor(client, poll_after_seconds=30)
    task = _task("keyword_research", {"seed_keyword": " coffee "})

    result = await processor.process(task)

    assert result.is_pending
    assert result.external_ref == "kw-1"
    assert result.poll_after_seconds == 30
    payload = client.calls[0][2][0]
    assert payload["keywords"] == ["coffee"]
    assert payload["location_code"] == 2840
    assert payload["tag"] == str(task.task_id)


@pytest.mark.asyncio
async def test_keyword_research_refused_post_fails():
    client = FakeServiceClient()
    client.respond(
        "dataforseo",
        keyword_research.POST_OPERATION,
        _dfs({"id": "kw-1", "status_code": 40501, "status_message": "Invalid Field"}),
    )

    result = await KeywordResearchProcessor(client).process(
        _task("keyword_research", {"seed_keyword": "coffee"})
    )

    assert result.kind == OutcomeKind.FAILURE
    assert result.error.code == "task_creation_failed"
    assert result.error.message == "Invalid Field"
    assert result.error.details == {"status_code": 40501}


@pytest.mark.asyncio
async def test_keyword_research_envelope_error_is_processor_failure():
    client = FakeServiceClient()
    client.respond(
        "dataforseo",
        keyword_research.POST_OPERATION,
        {"status_code": 40100, "status_message": "Not authorized"},
    )

    with pytest.raises(ProcessorFailure) as exc_info:
        await KeywordResearchProcessor(client).process(
            _task("keyword_research", {"seed_keyword": "coffee"})
        )

    assert exc_info.value.code == "api_error"
    assert exc_info.value.details["service"] == "dataforseo"


@pytest.mark.asyncio
async def test_keyword_research_poll_waits_then_summarizes():
    client = FakeServiceClient()
    operation = keyword_research.GET_OPERATION.format(task_id="kw-1")
    client.respond(
        "dataforseo",
        operation,
        _dfs({"id": "kw-1", "status_code": 40602, "status_message": "Task In Queue"}),
        _dfs(
            {
                "id": "kw-1",
                "status_code": 20000,
                "result": [
                    {
                        "keyword_data": {
                            "keyword": "coffee beans",
                            "search_volume": 2000,
                            "cpc": 1.5,
                            "competition": 0.2,
                        }
                    },
                    {"keyword": "cheap coffee", "search_volume": 100, "cpc": 0.5, "competition": 0.9},
                ],
            }
        ),
    )
    processor = KeywordResearchProcessor(client)
    task = _task("keyword_research", {"seed_keyword": "coffee"}, external_ref="kw-1")

    waiting = await processor.poll(task)
    assert waiting.is_pending
    assert waiting.external_ref == "kw-1"

    done = await processor.poll(task)
    assert done.is_success
    outputs = done.outputs
    assert [k["keyword"] for k in outputs["keywords"]] == ["coffee beans", "cheap coffee"]
    assert outputs["stats"]["total_keywords"] == 2
    assert outputs["stats"]["average_volume"] == 1050
    assert outputs["suggestions"] == {
        "high_volume": ["coffee beans"],
        "low_competition": ["coffee beans"],
        "high_cpc": ["coffee beans"],
    }
    assert outputs["seed_keyword"] == "coffee"
    assert outputs["language"] == "en"
    assert all(call[3] == "GET" for call in client.calls)


@pytest.mark.asyncio
async def test_keyword_research_poll_error_status_fails():
    client = FakeServiceClient()
    client.respond(
        "dataforseo",
        keyword_research.GET_OPERATION.format(task_id="kw-1"),
        _dfs({"id": "kw-1", "status_code": 40400, "status_message": "Not Found"}),
    )

    result = await KeywordResearchProcessor(client).poll(
        _task("keyword_research", {"seed_keyword": "coffee"}, external_ref="kw-1")
    )

    assert result.error.code == "api_error"
    assert result.error.message == "Not Found"


# ============================================================================
# SEO audit
# ============================================================================


def test_audit_score_deducts_by_severity():
    issues = {"critical": [1, 2], "high": [1], "medium": [1, 1, 1], "low": [1]}
    assert audit_score(issues) == 100 - (2 * 10 + 5 + 3 * 2 + 1)
    assert audit_score({"critical": [1] * 11}) == 0
    assert audit_score({}) == 100


def test_keyword_opportunities_filters_and_ranks():
    items = [
        {"keyword": "a", "position": 15, "search_volume": 1000, "cpc": 2},
        {"keyword": "b", "position": 12, "search_volume": 10000, "cpc": 0},
        {"keyword": "first page", "position": 3, "search_volume": 50000, "cpc": 5},
        {"keyword": "too rare", "position": 20, "search_volume": 50, "cpc": 5},
        {"keyword": None, "position": 30, "search_volume": 5000},
    ]

    assert [item["keyword"] for item in keyword_opportunities(items)] == ["a", "b"]


def test_keyword_opportunities_are_capped():
    items = [
        {"keyword": f"k{i}", "position": 11 + i, "search_volume": 200, "cpc": 1} for i in range(25)
    ]
    assert len(keyword_opportunities(items)) == 20


@pytest.mark.parametrize(
    "inputs, code",
    [
        ({}, "missing_domain"),
        ({"domain": "not a domain"}, "invalid_domain"),
        ({"domain": "example.com", "max_pages": 5}, "invalid_max_pages"),
        ({"domain": "example.com", "competitors": ["ok.com", "bad domain"]}, "invalid_competitor"),
        ({"domain": "example.com", "competitors": "ok.com"}, "invalid_competitor"),
    ],
)
def test_seo_audit_rejects_bad_inputs(inputs, code):
    with pytest.raises(ValidationError) as exc_info:
        SeoAuditProcessor(FakeServiceClient()).validate_inputs(inputs)
    assert exc_info.value.code == code


@pytest.mark.asyncio
async def test_seo_audit_posts_crawl():
    client = FakeServiceClient()
    client.respond("dataforseo", seo_audit.POST_OPERATION, _dfs({"id": "crawl-1", "status_code": 20100}))

    result = await SeoAuditProcessor(client).process(
        _task("seo_audit", {"domain": "example.com", "max_pages": 50})
    )

    assert result.external_ref == "crawl-1"
    assert client.calls[0][2][0]["max_crawl_pages"] == 50


@pytest.mark.asyncio
async def test_seo_audit_stays_pending_while_crawling():
    client = FakeServiceClient()
    client.respond(
        "dataforseo",
        seo_audit.SUMMARY_OPERATION.format(task_id="crawl-1"),
        _dfs({"status_code": 20000, "result": [{"crawl_progress": "in_progress"}]}),
    )

    result = await SeoAuditProcessor(client).poll(
        _task("seo_audit", {"domain": "example.com"}, external_ref="crawl-1")
    )

    assert result.is_pending
    assert result.external_ref == "crawl-1"


@pytest.mark.asyncio
async def test_seo_audit_error_status_fails():
    client = FakeServiceClient()
    client.respond(
        "dataforseo",
        seo_audit.SUMMARY_OPERATION.format(task_id="crawl-1"),
        _dfs({"status_code": 40400, "status_message": "Not Found"}),
    )

    result = await SeoAuditProcessor(client).poll(
        _task("seo_audit", {"domain": "example.com"}, external_ref="crawl-1")
    )

    assert result.error.code == "audit_api_error"


@pytest.mark.asyncio
async def test_seo_audit_report_without_openai_uses_template_summary():
    client = FakeServiceClient(configured=("dataforseo",))
    client.respond(
        "dataforseo",
        seo_audit.SUMMARY_OPERATION.format(task_id="crawl-1"),
        _dfs(
            {
                "status_code": 20000,
                "result": [
                    {
                        "crawl_progress": "finished",
                        "crawl_status": {"pages_crawled": 42},
                        "page_metrics": {
                            "checks": {"is_http": 3, "no_description": 1, "no_image_alt": 0}
                        },
                    }
                ],
            }
        ),
    )
    client.respond(
        "dataforseo",
        seo_audit.RANKED_KEYWORDS_OPERATION,
        _dfs(
            {
                "status_code": 20000,
                "result": [
                    {
                        "items": [
                            {
                                "keyword_data": {
                                    "keyword": "seo tools",
                                    "keyword_info": {"search_volume": 5000, "cpc": 3},
                                },
                                "ranked_serp_element": {"serp_item": {"rank_absolute": 14}},
                            }
                        ]
                    }
                ],
            }
        ),
    )

    result = await SeoAuditProcessor(client).poll(
        _task("seo_audit", {"domain": "example.com"}, external_ref="crawl-1")
    )

    assert result.is_success
    outputs = result.outputs
    assert [i["check"] for i in outputs["issues"]["critical"]] == ["is_http"]
    assert [i["check"] for i in outputs["issues"]["high"]] == ["no_description"]
    assert outputs["issues"]["low"] == []
    assert outputs["stats"] == {"pages_analyzed": 42, "issues_found": 2, "score": 85}
    assert [k["keyword"] for k in outputs["keyword_opportunities"]] == ["seo tools"]
    assert outputs["competitor_analysis"] == []
    assert outputs["summary"].startswith(
        "SEO audit for example.com completed with a score of 85/100. Found 2 issues "
        "(1 critical, 1 high priority, 0 medium priority, 0 low priority)."
    )
    assert client.calls_to("openai") == []
