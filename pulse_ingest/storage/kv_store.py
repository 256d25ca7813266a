"""
Key-value state store used for the watermark, identity caches,
fallback usage counters and run records.

Values are strings (JSON for structured records). Writes are last-write-wins;
there are no transactions, so read-modify-write callers must tolerate races.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

# Key schema
WATERMARK_KEY = "last_processed_timestamp"
TITLE_CACHE_KEY = "article_titles_cache"
URL_CACHE_KEY = "article_urls_cache"
RECENT_RUNS_KEY = "recent_processing_runs"
PROCESSING_STATS_KEY = "processing_stats"
RUN_LOCK_KEY = "pipeline_run_lock"
USAGE_KEY_PREFIX = "gnews_usage_"
QUERY_CACHE_PREFIX = "gnews_query_"
FALLBACK_ARTICLES_PREFIX = "gnews_articles_"
RUN_KEY_PREFIX = "processing_run_"
ERROR_REPORT_PREFIX = "error_report_"
HEALTH_CHECK_PREFIX = "health_check_"


class KeyValueStore(ABC):
    """Typed interface every component depends on"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        pass

    async def get_json(self, key: str, default: Any = None) -> Any:
        raw = await self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("kv_value_not_json", key=key)
            return default

    async def put_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self.put(key, json.dumps(value, default=str), ttl_seconds)


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store with the same expiry semantics as the durable backends.
    Used for tests and for running without a database.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for key, (_, expires_at) in list(self._data.items()):
            if self._expired(expires_at):
                del self._data[key]
                continue
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
