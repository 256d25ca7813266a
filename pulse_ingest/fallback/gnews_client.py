from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from dateutil import parser as date_parser

from ..exceptions import FallbackApiError
from ..models.article import Article
from ..sources.parsing import categorize_article
from ..utils.string_utils import strip_html

logger = structlog.get_logger(__name__)

SOURCE_ID = "gnews"


class GNewsClient:
    """Thin async client for the GNews search endpoint"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://gnews.io/api/v4",
        country: str = "ke",
        language: str = "en",
        articles_per_request: int = 10,
    ):
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.country = country
        self.language = language
        self.articles_per_request = articles_per_request

    async def search(self, query: str, since: datetime) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/search"
        params = {
            "q": query,
            "lang": self.language,
            "country": self.country,
            "max": self.articles_per_request,
            "from": since.strftime("%Y-%m-%d"),
            "apikey": self.api_key,
        }
        headers = {
            "User-Agent": "PulseIngest/1.0",
            "Accept": "application/json",
        }

        logger.info("fallback_request_started", query=query, since=params["from"])

        try:
            response = await self.client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise FallbackApiError(f"Fallback API request failed: {e}", source_id=SOURCE_ID, url=url) from e

        if response.status_code >= 400:
            raise FallbackApiError(
                f"Fallback API error: {response.status_code} - {response.text[:200]}",
                source_id=SOURCE_ID,
                http_status=response.status_code,
                url=url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FallbackApiError("Fallback API returned invalid JSON", source_id=SOURCE_ID, url=url) from e

        articles = (data.get("articles") or []) if isinstance(data, dict) else None
        if not isinstance(articles, list):
            raise FallbackApiError(
                "Fallback API returned an unexpected payload",
                source_id=SOURCE_ID,
                url=url,
                details={"payload_type": type(data).__name__},
            )
        return [raw for raw in articles if isinstance(raw, dict)]


def published_at_of(raw: Dict[str, Any]) -> Optional[datetime]:
    value = raw.get("publishedAt")
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def convert_article(raw: Dict[str, Any]) -> Optional[Article]:
    """Map a GNews article onto the pipeline's Article; None if unusable."""
    published_at = published_at_of(raw)
    title = strip_html(raw.get("title") or "")
    link = (raw.get("url") or "").strip()
    if not title or not link or published_at is None:
        return None

    description = strip_html(raw.get("description") or "") or None
    source = raw.get("source") or {}
    return Article(
        title=title,
        link=link,
        published_at=published_at,
        source_name=source.get("name") or "GNews",
        description=description,
        image_url=raw.get("image") or None,
        guid=link,
        category=categorize_article(title, description or ""),
    )
