"""Content generation processor."""

import logging
import math
import re
from typing import Any

from taskgate.engine.errors import ValidationError
from taskgate.integrations.service_client import ServiceClient, ServiceError
from taskgate.models import Task
from taskgate.processors.base import Processor, ProcessorResult
from taskgate.processors.services import OPENAI, chat_completion, failure_from

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("blog_post", "product_description", "landing_page", "email", "social_media")

TONE_TEMPERATURES = {
    "professional": 0.5,
    "conversational": 0.7,
    "casual": 0.8,
    "humorous": 0.9,
    "formal": 0.4,
    "technical": 0.3,
}
DEFAULT_TEMPERATURE = 0.7

MIN_WORDS = 100
MAX_WORDS = 3000
DEFAULT_WORDS = 800
WORDS_PER_MINUTE = 225

STRUCTURE_HINTS = {
    "blog_post": "The blog post should include an introduction, several body sections with subheadings, and a conclusion.",
    "product_description": "The product description should highlight benefits, features, and include a call-to-action.",
    "landing_page": "The landing page content should be persuasive, addressing pain points and highlighting solutions with a strong call-to-action.",
    "email": "The email should have a compelling subject line, personalized greeting, valuable body content, and a clear call-to-action.",
    "social_media": "The social media post should be engaging, concise, and include relevant hashtags.",
}

_TITLE_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
_WORD_RE = re.compile(r"[A-Za-z'-]+")


def max_tokens_for(word_count: int) -> int:
    """Roughly 1.3 tokens per word plus 20% for formatting, capped at 4000."""
    return min(4000, int(word_count * 1.3 * 1.2))


def temperature_for(tone: str) -> float:
    return TONE_TEMPERATURES.get(tone, DEFAULT_TEMPERATURE)


def extract_title(content: str) -> str:
    match = _TITLE_RE.search(content)
    return match.group(1).strip() if match else ""


def content_stats(content: str) -> dict[str, int]:
    words = len(_WORD_RE.findall(content))
    return {
        "word_count": words,
        "character_count": len(content),
        "reading_time": math.ceil(words / WORDS_PER_MINUTE),
    }


class ContentGenerationProcessor(Processor):
    """Writes marketing copy with a chat-completion model."""

    task_type = "content_generation"

    def __init__(self, client: ServiceClient, model: str = "gpt-3.5-turbo"):
        self.client = client
        self.model = model

    def validate_inputs(self, inputs: dict[str, Any]) -> None:
        if not str(inputs.get("topic") or "").strip():
            raise ValidationError("Topic is required.", code="missing_topic", field="topic")

        content_type = inputs.get("content_type")
        if content_type is not None and content_type not in CONTENT_TYPES:
            raise ValidationError(
                f"Invalid content type: {content_type}", code="invalid_content_type", field="content_type"
            )

        tone = inputs.get("tone")
        if tone is not None and tone not in TONE_TEMPERATURES:
            raise ValidationError(f"Invalid tone: {tone}", code="invalid_tone", field="tone")

        if "word_count" in inputs:
            try:
                word_count = int(inputs["word_count"])
            except (TypeError, ValueError):
                raise ValidationError(
                    "Word count must be a number.", code="invalid_word_count", field="word_count"
                ) from None
            if not MIN_WORDS <= word_count <= MAX_WORDS:
                raise ValidationError(
                    f"Word count must be between {MIN_WORDS} and {MAX_WORDS}.",
                    code="invalid_word_count",
                    field="word_count",
                )

        keywords = inputs.get("keywords")
        if keywords is not None and (
            not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords)
        ):
            raise ValidationError(
                "Keywords must be a list of strings.", code="invalid_keywords", field="keywords"
            )

    def build_prompt(
        self,
        content_type: str,
        topic: str,
        keywords: list[str],
        tone: str,
        outline: str,
        word_count: int,
    ) -> str:
        parts = [f"Create a {tone}-toned {content_type} about {topic}."]
        if keywords:
            parts.append(
                f"Include the following keywords naturally throughout the content: {', '.join(keywords)}."
            )
        if outline:
            parts.append(f"Follow this outline:\n\n{outline}\n")
        elif content_type in STRUCTURE_HINTS:
            parts.append(STRUCTURE_HINTS[content_type])
        parts.append(f"The content should be approximately {word_count} words.")
        parts.append(
            "Format the content using Markdown, with a title, headings, and appropriate "
            "formatting for readability."
        )
        return " ".join(parts)

    async def process(self, task: Task) -> ProcessorResult:
        inputs = task.inputs
        content_type = inputs.get("content_type") or "blog_post"
        topic = str(inputs["topic"]).strip()
        keywords = list(inputs.get("keywords") or [])
        tone = inputs.get("tone") or "professional"
        outline = inputs.get("outline") or ""
        word_count = int(inputs.get("word_count") or DEFAULT_WORDS)

        try:
            content = await chat_completion(
                self.client,
                self.model,
                system=(
                    f"You are an expert content creator specializing in {content_type} writing "
                    f"with a {tone} tone. Create high-quality, engaging content that incorporates "
                    "the keywords provided naturally."
                ),
                prompt=self.build_prompt(content_type, topic, keywords, tone, outline, word_count),
                max_tokens=max_tokens_for(word_count),
                temperature=temperature_for(tone),
            )
        except ServiceError as exc:
            raise failure_from(exc) from exc

        if not content:
            return ProcessorResult.failure("invalid_response", f"Empty response from {OPENAI}")

        title = extract_title(content) or await self._generate_title(content, content_type, keywords)
        meta_description = await self._generate_meta_description(content, title)

        return ProcessorResult.success(
            {
                "content": content,
                "title": title,
                "meta_description": meta_description,
                "content_type": content_type,
                "stats": content_stats(content),
            }
        )

    async def _generate_title(self, content: str, content_type: str, keywords: list[str]) -> str:
        try:
            title = await chat_completion(
                self.client,
                self.model,
                system=f"You are an expert at creating engaging titles for {content_type} content.",
                prompt=(
                    "Generate a compelling title for the following content that includes some of "
                    f"these keywords if possible: {', '.join(keywords)}.\n\nContent:\n{content[:500]}..."
                ),
                max_tokens=50,
            )
        except ServiceError as exc:
            logger.warning("Title generation failed: %s", exc)
            return ""
        return title.strip("\"'")

    async def _generate_meta_description(self, content: str, title: str) -> str:
        try:
            description = await chat_completion(
                self.client,
                self.model,
                system=(
                    "You are an SEO expert specializing in meta descriptions. Create compelling "
                    "descriptions that encourage clicks while incorporating keywords naturally."
                ),
                prompt=(
                    "Generate a compelling meta description (about 150-160 characters) for SEO "
                    "purposes for the following content. Include primary keywords if possible:\n\n"
                    f"Title: {title}\n\nContent:\n{content[:500]}..."
                ),
                max_tokens=100,
            )
        except ServiceError as exc:
            logger.warning("Meta description generation failed: %s", exc)
            return ""
        return description.strip("\"'")
