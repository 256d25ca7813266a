import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import openai
import structlog

from ..exceptions import EnrichmentError
from ..models.article import Article, ProcessedArticle, ScrapedContent
from ..utils.string_utils import slugify
from .base import Enricher

logger = structlog.get_logger(__name__)

CATEGORIES = ("Politics", "Business", "Entertainment", "Sports", "Technology")
DEFAULT_CATEGORY = "Business"

CATEGORY_FALLBACK_IMAGES = {
    "Politics": "https://images.unsplash.com/photo-1529107386315-e1a2ed48a620?w=800&h=400&fit=crop",
    "Business": "https://images.unsplash.com/photo-1507003211169-0a1dd7228f2d?w=800&h=400&fit=crop",
    "Entertainment": "https://images.unsplash.com/photo-1514525253161-7a46d19cd819?w=800&h=400&fit=crop",
    "Sports": "https://images.unsplash.com/photo-1461896836934-ffe607ba8211?w=800&h=400&fit=crop",
    "Technology": "https://images.unsplash.com/photo-1518709268805-4e9042af2176?w=800&h=400&fit=crop",
}
LATEST_FALLBACK_IMAGE = "https://images.unsplash.com/photo-1504711434969-e33886168f5c?w=800&h=400&fit=crop"

SYSTEM_PROMPT = (
    "You are a professional Kenyan news editor. Always start your response with the category "
    "name on the first line, then provide the rewritten article with \"Why it matters\" and "
    "\"The Big Picture\" sections."
)

USER_PROMPT = """First, classify the following article into ONE of these categories: [{categories}].

Then, rewrite this article for uniqueness, SEO optimization, and readability for a Kenyan audience. The rewrite must follow all on-page SEO rules and include a 'Why it matters' sentence and a 3-bullet-point 'The Big Picture' summary.

Here is the article:

Title: {title}
Content: {content}"""


def extract_summary(content: str) -> str:
    sentences = [s.strip() for s in re.split(r'[.!?]+', content) if s.strip()]
    first_two = ". ".join(sentences[:2]).strip()
    if len(first_two) > 200:
        return content[:197] + "..."
    return first_two if first_two.endswith(".") else first_two + "."


def parse_model_output(text: str, article: Article, scraped: ScrapedContent) -> ProcessedArticle:
    lines = text.strip().split("\n")
    category = lines[0].strip().strip("*#: ").strip()
    body = "\n".join(lines[1:]).strip()

    if not body:
        raise EnrichmentError("Model returned no article body", url=article.link)

    if category not in CATEGORIES:
        category = DEFAULT_CATEGORY

    image_url = (
        scraped.image_url
        or article.image_url
        or CATEGORY_FALLBACK_IMAGES.get(category, LATEST_FALLBACK_IMAGE)
    )

    return ProcessedArticle(
        title=article.title,
        slug=slugify(article.title, max_length=100),
        content=body,
        summary=article.description or extract_summary(body),
        category=category,
        source_url=article.link,
        image_url=image_url,
        published_at=article.published_at.astimezone(timezone.utc).isoformat(),
        created_at=datetime.now(timezone.utc).isoformat(),
    )


class OpenRouterEnricher(Enricher):
    """
    Rewrites and categorizes an article through OpenRouter's
    OpenAI-compatible chat completions API, trying each model in order.
    """

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI],
        models: Sequence[str],
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ):
        self.client = client
        self.models: List[str] = list(models)
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def _complete(self, model: str, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            extra_headers={"X-Title": "Pulse Ingest"},
        )
        if not response.choices or not response.choices[0].message or not response.choices[0].message.content:
            raise EnrichmentError(f"Invalid response format from model {model}")
        return response.choices[0].message.content

    async def enrich(self, article: Article, scraped: ScrapedContent) -> ProcessedArticle:
        if self.client is None:
            raise EnrichmentError("Enrichment service is not configured", url=article.link)

        prompt = USER_PROMPT.format(
            categories=", ".join(CATEGORIES),
            title=article.title,
            content=scraped.content,
        )

        last_error: Optional[str] = None
        for attempt, model in enumerate(self.models, start=1):
            try:
                text = await self._complete(model, prompt)
                processed = parse_model_output(text, article, scraped)
                logger.info("enrichment_completed", model=model, url=article.link, category=processed.category)
                return processed
            except openai.OpenAIError as e:
                last_error = str(e)
            except EnrichmentError as e:
                last_error = e.message
            logger.warning("enrichment_model_failed", model=model, attempt=attempt, url=article.link, error=last_error)

        raise EnrichmentError(
            f"All enrichment models failed: {last_error}",
            url=article.link,
            attempt=len(self.models),
        )
