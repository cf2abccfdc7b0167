"""Built-in task types."""

from taskgate.config import Settings
from taskgate.integrations.service_client import ServiceClient
from taskgate.processors.content_generation import ContentGenerationProcessor
from taskgate.processors.keyword_research import KeywordResearchProcessor
from taskgate.processors.registry import ProcessorRegistry
from taskgate.processors.seo_audit import SeoAuditProcessor


def register_builtin_processors(
    registry: ProcessorRegistry,
    settings: Settings,
    client: ServiceClient,
) -> None:
    poll_after = settings.external_poll_interval_seconds
    registry.register(
        "content_generation",
        ContentGenerationProcessor(client, model=settings.openai_model),
        credit_cost=10,
        requires_approval=True,
        name="Content Generation",
        description="Generate blog posts, product descriptions and other copy.",
    )
    registry.register(
        "keyword_research",
        KeywordResearchProcessor(client, poll_after_seconds=poll_after),
        credit_cost=5,
        name="Keyword Research",
        description="Expand a seed keyword into volume, CPC and competition data.",
    )
    registry.register(
        "seo_audit",
        SeoAuditProcessor(client, model=settings.openai_model, poll_after_seconds=poll_after),
        credit_cost=15,
        name="SEO Audit",
        description="Crawl a site and score its on-page SEO health.",
    )


def build_default_registry(settings: Settings, client: ServiceClient) -> ProcessorRegistry:
    """Registry with the built-in processors and configured overrides applied.

    The caller may register more processors before freezing it.
    """
    registry = ProcessorRegistry()
    register_builtin_processors(registry, settings, client)
    registry.apply_overrides(settings)
    return registry
