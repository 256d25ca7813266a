import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from ..storage.kv_store import KeyValueStore, WATERMARK_KEY

logger = structlog.get_logger(__name__)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class WatermarkStore:
    """
    Publish-time boundary stored as epoch milliseconds under
    last_processed_timestamp. It never moves backward.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        default_lookback_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.default_lookback_hours = default_lookback_hours
        self._clock = clock

    async def _stored(self) -> Optional[datetime]:
        raw = await self.kv.get(WATERMARK_KEY)
        if raw is None:
            return None
        try:
            return from_epoch_ms(int(raw))
        except ValueError:
            logger.warning("watermark_unparseable", raw_value=raw)
            return None

    async def read(self) -> datetime:
        stored = await self._stored()
        if stored is not None:
            return stored
        default = datetime.fromtimestamp(self._clock(), tz=timezone.utc) - timedelta(hours=self.default_lookback_hours)
        logger.info("watermark_defaulted", watermark=default.isoformat())
        return default

    async def advance(self, candidate: datetime) -> datetime:
        current = await self._stored()
        if current is not None and candidate <= current:
            return current

        await self.kv.put(WATERMARK_KEY, str(to_epoch_ms(candidate)))
        logger.info(
            "watermark_advanced",
            previous=current.isoformat() if current else None,
            watermark=candidate.isoformat(),
        )
        return candidate
