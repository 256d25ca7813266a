"""
Single-source feed fetcher with retry/backoff and bot-resistant headers.
"""

import asyncio
import random
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
import structlog

from ..exceptions import FeedBlockedError, FeedParseError, SourceFetchError
from ..models.article import Article
from ..utils.url_utils import origin_of
from .parsing import parse_feed_document
from .registry import FeedSource, SourcePolicy, USER_AGENTS

logger = structlog.get_logger(__name__)

HTML_MARKERS = ("<!doctype html", "<html")


def looks_like_html(body: bytes) -> bool:
    head = body[:2048].decode("utf-8", errors="ignore").lstrip().lower()
    return any(marker in head for marker in HTML_MARKERS)


class FeedFetcher:
    """
    Retrieves one feed and parses it into candidate articles.

    `policy.max_retries` is the total number of attempts. Between attempts the
    fetcher waits `policy.backoff_for(attempt)` and rotates the user agent.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agents: Sequence[str] = USER_AGENTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.user_agents = tuple(user_agents)
        self._sleep = sleep
        self._now = now

    def build_headers(self, url: str, policy: SourcePolicy) -> dict:
        headers = {
            'User-Agent': random.choice(self.user_agents),
            'Referer': origin_of(url),
            'DNT': '1',
        }
        headers.update(policy.headers)
        return headers

    async def fetch(self, source: FeedSource, policy: Optional[SourcePolicy] = None) -> List[Article]:
        policy = policy or source.policy
        attempts = max(1, policy.max_retries)
        last_error: Optional[SourceFetchError] = None

        for attempt in range(1, attempts + 1):
            try:
                articles = await self._fetch_once(source, policy, attempt)
                logger.info(
                    "feed_fetch_succeeded",
                    source_id=source.source_id,
                    attempt=attempt,
                    articles=len(articles),
                )
                return articles
            except SourceFetchError as e:
                last_error = e
                logger.warning(
                    "feed_fetch_attempt_failed",
                    source_id=source.source_id,
                    url=source.url,
                    attempt=attempt,
                    max_attempts=attempts,
                    category=e.category.value,
                    status=e.http_status,
                    error=e.message,
                )
                if attempt < attempts:
                    await self._sleep(policy.backoff_for(attempt))

        last_error.attempt = attempts
        logger.error(
            "feed_fetch_failed",
            source_id=source.source_id,
            url=source.url,
            attempt=attempts,
            category=last_error.category.value,
            status=last_error.http_status,
            error=last_error.message,
        )
        raise last_error

    async def _fetch_once(self, source: FeedSource, policy: SourcePolicy, attempt: int) -> List[Article]:
        error_context = dict(source_id=source.source_id, url=source.url, attempt=attempt)

        try:
            response = await self.client.get(
                source.url,
                headers=self.build_headers(source.url, policy),
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            raise SourceFetchError(f"Timed out fetching feed: {e}", **error_context) from e
        except httpx.HTTPError as e:
            raise SourceFetchError(f"Network error fetching feed: {e}", **error_context) from e

        if response.status_code >= 400:
            raise SourceFetchError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                http_status=response.status_code,
                **error_context,
            )

        body = response.content
        if looks_like_html(body):
            raise FeedBlockedError(
                "Received HTML instead of a feed document, likely blocked by anti-bot protection",
                http_status=response.status_code,
                **error_context,
            )

        now = self._now() if self._now else None
        feed, articles = parse_feed_document(body, source.name, now)
        if feed.bozo and not feed.entries:
            raise FeedParseError(
                f"Unparseable feed document: {feed.get('bozo_exception')}",
                http_status=response.status_code,
                **error_context,
            )
        return articles
