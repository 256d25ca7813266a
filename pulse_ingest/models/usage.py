from typing import Optional

from pydantic import BaseModel


class DailyUsageCounter(BaseModel):
    """Fallback API calls made on one UTC calendar day"""
    date_key: str
    calls_used: int = 0
    last_call_timestamp: Optional[float] = None  # epoch seconds
    cache_hits: int = 0
    cache_misses: int = 0
    daily_limit: int = 20

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.calls_used)

    @property
    def exhausted(self) -> bool:
        return self.calls_used >= self.daily_limit
