"""
Cross-run and in-batch duplicate filtering.

Two tiers:
  1. exact membership of the normalized title or URL in the persisted identity
     sets (article_titles_cache / article_urls_cache);
  2. lexical similarity against titles already accepted in the current batch.

The similarity is word overlap only; two rewrites of the same wire story with
different vocabulary are not caught.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

import structlog

from ..exceptions import KeyValueStoreError
from ..models.article import Article
from ..storage.kv_store import KeyValueStore, TITLE_CACHE_KEY, URL_CACHE_KEY
from ..utils.string_utils import normalize_title, normalize_url

logger = structlog.get_logger(__name__)


def title_similarity(title1: str, title2: str) -> float:
    """
    Word-overlap score between two normalized titles.

    Only words longer than 3 characters take part, on both sides of the
    ratio. Scores above 0.6 are damped by the relative length difference of
    the two strings.
    """
    words1 = [w for w in title1.split() if len(w) > 3]
    words2 = [w for w in title2.split() if len(w) > 3]
    if not words1 or not words2:
        return 0.0

    common = sum(1 for w in words1 if w in words2)
    similarity = common / max(len(words1), len(words2))

    if similarity > 0.6:
        length_diff = abs(len(title1) - len(title2)) / max(len(title1), len(title2))
        return similarity * (1 - length_diff * 0.3)
    return similarity


@dataclass
class DedupStats:
    candidates: int = 0
    unique: int = 0
    cache_hits: int = 0
    batch_duplicates: int = 0
    new_entries_cached: int = 0
    cached_titles: int = 0
    cached_urls: int = 0
    persisted: bool = False

    @property
    def duplicates_filtered(self) -> int:
        return self.candidates - self.unique


@dataclass
class DedupResult:
    unique: List[Article] = field(default_factory=list)
    stats: DedupStats = field(default_factory=DedupStats)


class DeduplicationEngine:

    def __init__(
        self,
        kv: KeyValueStore,
        max_size: int = 2000,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        threshold: float = 0.85,
    ):
        self.kv = kv
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.threshold = threshold

    async def _load_set(self, key: str) -> List[str]:
        try:
            values = await self.kv.get_json(key, default=[])
        except KeyValueStoreError as e:
            logger.warning("identity_cache_load_failed", key=key, error=e.message)
            return []
        return [v for v in values if isinstance(v, str)] if isinstance(values, list) else []

    async def load_identity_sets(self) -> Tuple[List[str], List[str]]:
        titles = await self._load_set(TITLE_CACHE_KEY)
        urls = await self._load_set(URL_CACHE_KEY)
        logger.debug("identity_cache_loaded", titles=len(titles), urls=len(urls))
        return titles, urls

    def _is_near_duplicate(self, normalized: str, accepted: Iterable[str]) -> bool:
        return any(title_similarity(normalized, seen) > self.threshold for seen in accepted)

    async def dedupe(self, candidates: List[Article], persist: bool = True) -> DedupResult:
        """
        Filter candidates against the identity sets and each other.

        First-seen wins within a batch. With persist=False the identity sets
        are read but never written.
        """
        titles, urls = await self.load_identity_sets()
        # dicts keep insertion order, so the oldest identities are evicted first
        title_set = dict.fromkeys(titles)
        url_set = dict.fromkeys(urls)

        result = DedupResult(stats=DedupStats(candidates=len(candidates)))
        accepted_titles: List[str] = []
        accepted_urls: List[str] = []

        for article in candidates:
            normalized_title = normalize_title(article.title)
            normalized_url = normalize_url(article.link)

            if normalized_title in title_set or normalized_url in url_set:
                result.stats.cache_hits += 1
                continue

            if (
                normalized_url in accepted_urls
                or normalized_title in accepted_titles
                or self._is_near_duplicate(normalized_title, accepted_titles)
            ):
                result.stats.batch_duplicates += 1
                continue

            accepted_titles.append(normalized_title)
            accepted_urls.append(normalized_url)
            result.unique.append(article)

        # the sets only take this batch's identities once the loop is done
        title_set.update(dict.fromkeys(accepted_titles))
        url_set.update(dict.fromkeys(accepted_urls))

        result.stats.unique = len(result.unique)
        result.stats.new_entries_cached = len(result.unique)

        kept_titles = list(title_set)[-self.max_size:]
        kept_urls = list(url_set)[-self.max_size:]
        result.stats.cached_titles = len(kept_titles)
        result.stats.cached_urls = len(kept_urls)

        if persist and result.unique:
            result.stats.persisted = await self._persist(kept_titles, kept_urls)

        logger.info(
            "dedupe_completed",
            candidates=result.stats.candidates,
            unique=result.stats.unique,
            cache_hits=result.stats.cache_hits,
            batch_duplicates=result.stats.batch_duplicates,
            persisted=result.stats.persisted,
        )
        return result

    async def _persist(self, titles: List[str], urls: List[str]) -> bool:
        try:
            await self.kv.put_json(TITLE_CACHE_KEY, titles, ttl_seconds=self.ttl_seconds)
            await self.kv.put_json(URL_CACHE_KEY, urls, ttl_seconds=self.ttl_seconds)
        except KeyValueStoreError as e:
            logger.error("identity_cache_persist_failed", error=e.message)
            return False
        return True

    async def release(self, articles: List[Article]) -> None:
        """
        Drop identities of articles that failed downstream so a later run can
        pick them up again instead of treating them as already seen.
        """
        if not articles:
            return
        titles, urls = await self.load_identity_sets()
        drop_titles = {normalize_title(a.title) for a in articles}
        drop_urls = {normalize_url(a.link) for a in articles}

        await self._persist(
            [t for t in titles if t not in drop_titles],
            [u for u in urls if u not in drop_urls],
        )
        logger.info("identity_cache_released", articles=len(articles))
