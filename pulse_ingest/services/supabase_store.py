from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from ..exceptions import PersistenceError
from ..models.article import ProcessedArticle
from .base import ArticleStore

logger = structlog.get_logger(__name__)


def _count_from(response: httpx.Response) -> int:
    content_range = response.headers.get("content-range", "")
    total = content_range.split("/")[-1] if "/" in content_range else ""
    return int(total) if total.isdigit() else 0


class SupabaseArticleStore(ArticleStore):
    """Articles table behind the Supabase (PostgREST) REST API"""

    TABLE = "articles"

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str], service_key: Optional[str]):
        self.client = client
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key or ""

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.TABLE}"

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }
        headers.update(extra)
        return headers

    def _require_config(self) -> None:
        if not self.configured:
            raise PersistenceError("Persistence service is not configured")

    async def exists(self, source_url: str) -> bool:
        self._require_config()
        try:
            response = await self.client.get(
                self.table_url,
                params={"source_url": f"eq.{source_url}", "select": "id"},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("article_exists_check_failed", url=source_url, error=str(e))
            return False

        if response.status_code >= 400:
            logger.warning("article_exists_check_failed", url=source_url, status=response.status_code)
            return False

        data = response.json()
        return isinstance(data, list) and len(data) > 0

    async def store(self, article: ProcessedArticle) -> None:
        self._require_config()
        try:
            response = await self.client.post(
                self.table_url,
                json=article.to_dict(),
                headers=self._headers(**{"Content-Type": "application/json", "Prefer": "return=minimal"}),
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"Store request failed: {e}", url=article.source_url) from e

        if response.status_code == 409 or "duplicate key" in response.text:
            logger.warning("article_already_stored", title=article.title, url=article.source_url)
            return

        if response.status_code >= 400:
            raise PersistenceError(
                f"Store error: {response.status_code} - {response.text[:200]}",
                http_status=response.status_code,
                url=article.source_url,
            )

        logger.info("article_stored", title=article.title, url=article.source_url)

    async def stats(self) -> Dict[str, Any]:
        self._require_config()
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        count_headers = self._headers(Prefer="count=exact")

        try:
            total = await self.client.get(self.table_url, params={"select": "count"}, headers=count_headers)
            today_count = await self.client.get(
                self.table_url,
                params={"created_at": f"gte.{today}T00:00:00", "select": "count"},
                headers=count_headers,
            )
            last = await self.client.get(
                self.table_url,
                params={"select": "created_at", "order": "created_at.desc", "limit": "1"},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"Stats request failed: {e}") from e

        last_data = last.json() if last.status_code < 400 else []
        return {
            "total_articles": _count_from(total),
            "today_articles": _count_from(today_count),
            "last_processed": last_data[0].get("created_at") if isinstance(last_data, list) and last_data else None,
        }

    async def ping(self) -> None:
        self._require_config()
        try:
            response = await self.client.head(self.table_url, params={"select": "count"}, headers=self._headers())
        except httpx.HTTPError as e:
            raise PersistenceError(f"Persistence service unreachable: {e}") from e

        if response.status_code >= 400:
            raise PersistenceError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                http_status=response.status_code,
            )
