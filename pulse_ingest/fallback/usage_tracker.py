"""
Daily call counter for the quota-limited fallback API.

Counters live under gnews_usage_<YYYY-MM-DD> (UTC) and expire after 25 hours,
so each day starts from zero without any cleanup job.

Not a guarantee: increment() is read-then-write against a store without
transactions. Two invocations racing on the same day can both read N and both
write N+1, letting the ceiling be exceeded by a small margin. The ceiling sits
far below the provider's hard limit to absorb that.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from ..models.usage import DailyUsageCounter
from ..storage.kv_store import KeyValueStore, USAGE_KEY_PREFIX

logger = structlog.get_logger(__name__)

USAGE_TTL_SECONDS = 25 * 60 * 60


def day_key_for(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


class UsageTracker:

    def __init__(
        self,
        kv: KeyValueStore,
        daily_limit: int = 20,
        provider_limit: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.daily_limit = daily_limit
        self.provider_limit = provider_limit
        self._clock = clock

    def today(self) -> str:
        return day_key_for(self._clock())

    def _key(self, day: str) -> str:
        return f"{USAGE_KEY_PREFIX}{day}"

    async def get_usage(self, day: Optional[str] = None) -> DailyUsageCounter:
        day = day or self.today()
        stored = await self.kv.get_json(self._key(day))
        if not stored:
            return DailyUsageCounter(date_key=day, daily_limit=self.daily_limit)

        stored["date_key"] = day
        stored["daily_limit"] = self.daily_limit
        return DailyUsageCounter.model_validate(stored)

    async def _save(self, counter: DailyUsageCounter) -> None:
        await self.kv.put_json(
            self._key(counter.date_key),
            counter.model_dump(exclude={"daily_limit"}),
            ttl_seconds=USAGE_TTL_SECONDS,
        )

    async def increment(self, day: Optional[str] = None) -> DailyUsageCounter:
        counter = await self.get_usage(day)
        counter.calls_used += 1
        counter.last_call_timestamp = self._clock()
        await self._save(counter)

        logger.info(
            "fallback_usage_incremented",
            day=counter.date_key,
            calls_used=counter.calls_used,
            daily_limit=self.daily_limit,
        )
        return counter

    async def record_cache_hit(self, day: Optional[str] = None) -> None:
        counter = await self.get_usage(day)
        counter.cache_hits += 1
        await self._save(counter)

    async def record_cache_miss(self, day: Optional[str] = None) -> None:
        counter = await self.get_usage(day)
        counter.cache_misses += 1
        await self._save(counter)

    async def has_remaining(self, day: Optional[str] = None) -> bool:
        counter = await self.get_usage(day)
        return not counter.exhausted
