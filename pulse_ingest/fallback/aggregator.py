"""
Fallback aggregation over the quota-limited search API.

Consulted only when the primary feeds under-deliver. Spend is bounded three
ways: the daily ceiling tracked by UsageTracker, a per-query cache keyed by
query hash and day, and a hard cap on queries per invocation.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from ..exceptions import FallbackApiError, KeyValueStoreError
from ..models.article import Article
from ..models.errors import FetchError
from ..sources.parsing import is_valid_article
from ..storage.kv_store import FALLBACK_ARTICLES_PREFIX, KeyValueStore, QUERY_CACHE_PREFIX
from ..utils.string_utils import normalize_title, short_hash
from .gnews_client import GNewsClient, convert_article, published_at_of
from .usage_tracker import UsageTracker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FallbackOptions:
    min_primary_articles: int = 5
    max_queries_per_run: int = 2
    min_interval_seconds: float = 1.0
    query_cache_ttl_seconds: int = 6 * 60 * 60
    day_cache_ttl_seconds: int = 24 * 60 * 60
    day_cache_size: int = 100
    queries: Tuple[str, ...] = ()


@dataclass
class FallbackResult:
    articles: List[Article] = field(default_factory=list)
    errors: List[FetchError] = field(default_factory=list)
    requests_made: int = 0
    cache_hits: int = 0
    calls_used: int = 0
    remaining: int = 0
    skipped_reason: Optional[str] = None


def unique_by_title(raw_articles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for raw in raw_articles:
        key = normalize_title(raw.get("title") or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(raw)
    return unique


def newest_first(raw_articles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    dated = [(published_at_of(raw), raw) for raw in raw_articles]
    dated = [(published, raw) for published, raw in dated if published is not None]
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [raw for _, raw in dated]


class FallbackAggregator:

    def __init__(
        self,
        client: Optional[GNewsClient],
        usage: UsageTracker,
        kv: KeyValueStore,
        options: FallbackOptions = FallbackOptions(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.usage = usage
        self.kv = kv
        self.options = options
        self._sleep = sleep
        self._clock = clock

    @property
    def enabled(self) -> bool:
        """False when no API key is configured"""
        return self.client is not None

    async def should_use_fallback(self, primary_count: int, day: Optional[str] = None) -> bool:
        if primary_count >= self.options.min_primary_articles:
            return False
        if not self.enabled:
            logger.info("fallback_skipped", reason="not_configured", primary_count=primary_count)
            return False

        try:
            counter = await self.usage.get_usage(day)
        except KeyValueStoreError as e:
            logger.warning("fallback_usage_unreadable", error=e.message)
            return False

        if counter.exhausted:
            logger.info(
                "fallback_skipped",
                reason="daily_limit_reached",
                calls_used=counter.calls_used,
                daily_limit=counter.daily_limit,
            )
            return False
        return True

    async def fetch_fallback(self, since: datetime, max_articles: int = 25) -> FallbackResult:
        if not self.enabled:
            return FallbackResult(skipped_reason="not_configured")

        day = self.usage.today()
        counter = await self.usage.get_usage(day)
        result = FallbackResult(calls_used=counter.calls_used, remaining=counter.remaining)

        if counter.exhausted:
            logger.info("fallback_skipped", reason="daily_limit_reached", calls_used=counter.calls_used)
            result.skipped_reason = "daily_limit_reached"
            return result

        cached = [raw for raw in await self._day_cache(day) if self._newer(raw, since)]
        if len(cached) >= max_articles:
            logger.info("fallback_day_cache_hit", articles=len(cached))
            result.cache_hits = len(cached)
            result.articles = self._to_articles(newest_first(cached)[:max_articles])
            return result

        collected = list(cached)
        result.cache_hits = len(cached)
        last_call = counter.last_call_timestamp
        max_requests = min(self.options.max_queries_per_run, counter.remaining)

        for query in self.options.queries[:max_requests]:
            cache_key = f"{QUERY_CACHE_PREFIX}{short_hash(query)}_{day}"
            hit = await self._read_cache(cache_key)
            if hit is not None:
                logger.info("fallback_query_cache_hit", query=query, articles=len(hit))
                collected.extend(hit)
                result.cache_hits += len(hit)
                await self.usage.record_cache_hit(day)
                continue

            await self.usage.record_cache_miss(day)
            await self._enforce_spacing(last_call)

            try:
                raw_articles = await self.client.search(query, since)
            except FallbackApiError as e:
                logger.error(
                    "fallback_query_failed",
                    query=query,
                    category=e.category.value,
                    status=e.http_status,
                    error=e.message,
                )
                result.errors.append(e.to_fetch_error())
                continue
            finally:
                counter = await self.usage.increment(day)
                last_call = counter.last_call_timestamp
                result.requests_made += 1

            fresh = [raw for raw in raw_articles if self._newer(raw, since)]
            await self._write_cache(cache_key, fresh, self.options.query_cache_ttl_seconds)
            collected.extend(fresh)
            logger.info("fallback_query_succeeded", query=query, articles=len(fresh))

            if len(collected) >= max_articles:
                break

        selected = newest_first(unique_by_title(collected))[:max_articles]
        await self._merge_day_cache(day, selected)

        result.calls_used = counter.calls_used
        result.remaining = counter.remaining
        result.articles = self._to_articles(selected)
        logger.info(
            "fallback_completed",
            articles=len(result.articles),
            requests_made=result.requests_made,
            cache_hits=result.cache_hits,
            remaining=result.remaining,
        )
        return result

    @staticmethod
    def _newer(raw: Dict[str, Any], since: datetime) -> bool:
        published = published_at_of(raw)
        return published is not None and published > since

    @staticmethod
    def _to_articles(raw_articles: List[Dict[str, Any]]) -> List[Article]:
        articles = []
        for raw in raw_articles:
            article = convert_article(raw)
            if article is not None and is_valid_article(article):
                articles.append(article)
        return articles

    async def _enforce_spacing(self, last_call: Optional[float]) -> None:
        if not last_call:
            return
        wait = self.options.min_interval_seconds - (self._clock() - last_call)
        if wait > 0:
            logger.debug("fallback_rate_limit_wait", wait_seconds=round(wait, 3))
            await self._sleep(wait)

    async def _read_cache(self, key: str) -> Optional[List[Dict[str, Any]]]:
        try:
            value = await self.kv.get_json(key)
        except KeyValueStoreError as e:
            logger.warning("fallback_cache_read_failed", key=key, error=e.message)
            return None
        if value is not None and not isinstance(value, list):
            logger.warning("fallback_cache_malformed", key=key)
            return None
        return [raw for raw in value if isinstance(raw, dict)] if value is not None else None

    async def _write_cache(self, key: str, value: List[Dict[str, Any]], ttl_seconds: int) -> None:
        try:
            await self.kv.put_json(key, value, ttl_seconds=ttl_seconds)
        except KeyValueStoreError as e:
            logger.warning("fallback_cache_write_failed", key=key, error=e.message)

    async def _day_cache(self, day: str) -> List[Dict[str, Any]]:
        return await self._read_cache(f"{FALLBACK_ARTICLES_PREFIX}{day}") or []

    async def _merge_day_cache(self, day: str, raw_articles: List[Dict[str, Any]]) -> None:
        if not raw_articles:
            return
        existing = await self._day_cache(day)
        merged = newest_first(unique_by_title(existing + raw_articles))[:self.options.day_cache_size]
        await self._write_cache(f"{FALLBACK_ARTICLES_PREFIX}{day}", merged, self.options.day_cache_ttl_seconds)
