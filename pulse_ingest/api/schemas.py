from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class TriggerResponse(BaseModel):
    started: bool
    message: str
    trigger: str = "manual"
    timestamp: datetime


class DedupSummary(BaseModel):
    candidates: int
    unique: int
    duplicates_filtered: int
    cache_hits: int
    batch_duplicates: int


class RssDryRunResponse(BaseModel):
    status: str = "success"
    sources: int
    successful_sources: int
    source_success_rate: float
    articles_fetched: int
    articles_since_lookback: int
    dedup: DedupSummary
    errors: List[Dict[str, Any]]
    sample_articles: List[Dict[str, Any]]
    timestamp: datetime


class GNewsStatsResponse(BaseModel):
    status: str
    date: Optional[str] = None
    calls_used: int = 0
    daily_limit: int = 0
    provider_limit: int = 0
    remaining: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: Optional[float] = None
    last_call: Optional[datetime] = None
    message: Optional[str] = None
