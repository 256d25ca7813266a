"""Run records and health report shapes"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import FetchError


class ProcessingRun(BaseModel):
    """One pipeline execution, written once and never updated"""
    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0
    articles_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    source_success_rate: float = 0.0
    fallback_used: bool = False
    trigger: str = "scheduled"
    skipped_count: int = 0
    status: str = "completed"
    errors: List[FetchError] = []

    # articles_processed counts articles that survived dedupe; skipped ones were
    # already in the store. error_count covers source, fallback and article errors.
    @property
    def attempted_count(self) -> int:
        return max(0, self.articles_processed - self.skipped_count)


class ServiceStatus(str, Enum):
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ServiceHealth(BaseModel):
    name: str
    status: ServiceStatus
    response_time_ms: Optional[float] = None
    error_rate: float = 0.0
    last_check: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Optional[str] = None


class PerformanceMetrics(BaseModel):
    runs_considered: int = 0
    avg_processing_time_ms: float = 0.0
    # None when no article was attempted in the window
    success_rate: Optional[float] = None
    articles_per_hour: float = 0.0
    source_success_rate: Optional[float] = None
    fallback_runs: int = 0


class Alert(BaseModel):
    id: str
    level: AlertLevel
    message: str
    service: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resolved: bool = False


class HealthReport(BaseModel):
    status: OverallStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    services: List[ServiceHealth] = []
    metrics: PerformanceMetrics = PerformanceMetrics()
    alerts: List[Alert] = []
