"""
Point-in-time health report built from live probes and recent runs.

Status rules:
  critical  any dependency down, or success rate below 0.2
  degraded  any dependency degraded, success rate below 0.7,
            or average source success rate below 0.5
  healthy   otherwise

Rate rules only apply when the window holds at least one attempted article
(success rate) or at least one run (source success rate).
"""

import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from ..exceptions import KeyValueStoreError, PersistenceError
from ..models.monitoring import (
    Alert,
    AlertLevel,
    HealthReport,
    OverallStatus,
    PerformanceMetrics,
    ProcessingRun,
    ServiceHealth,
    ServiceStatus,
)
from ..services.base import ArticleStore
from ..sources.registry import FeedSource
from ..storage.kv_store import HEALTH_CHECK_PREFIX, KeyValueStore
from ..utils.url_utils import extract_domain
from .run_recorder import RunRecorder

logger = structlog.get_logger(__name__)

FEEDS_SERVICE = "RSS Feeds"
STORE_SERVICE = "Database"
KV_SERVICE = "KV Storage"
PROCESSING_SERVICE = "Processing"

HEALTH_CHECK_VALUE = "health_check_value"
HEALTH_CHECK_TTL_SECONDS = 60


@dataclass(frozen=True)
class HealthThresholds:
    feeds_up: float = 0.7
    feeds_degraded: float = 0.3
    critical_success_rate: float = 0.2
    degraded_success_rate: float = 0.7
    degraded_source_rate: float = 0.5
    alert_success_rate: float = 0.5
    alert_source_rate: float = 0.3
    alert_articles_per_hour: float = 1.0


def _service_slug(name: str) -> str:
    return "_".join(name.lower().split())


class HealthMonitor:

    def __init__(
        self,
        kv: KeyValueStore,
        recorder: RunRecorder,
        store: ArticleStore,
        client: httpx.AsyncClient,
        probe_sources: Sequence[FeedSource],
        probe_timeout_seconds: float = 10.0,
        window_hours: int = 24,
        thresholds: HealthThresholds = HealthThresholds(),
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.recorder = recorder
        self.store = store
        self.client = client
        self.probe_sources = list(probe_sources)
        self.probe_timeout_seconds = probe_timeout_seconds
        self.window_hours = window_hours
        self.thresholds = thresholds
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def check_feeds(self) -> ServiceHealth:
        if not self.probe_sources:
            return ServiceHealth(name=FEEDS_SERVICE, status=ServiceStatus.DOWN, error_rate=1.0,
                                 details="No feed sources configured", last_check=self._now())

        successes = 0
        total_ms = 0.0
        errors = []
        for source in self.probe_sources:
            started = time.perf_counter()
            try:
                response = await self.client.head(
                    source.url,
                    headers={"User-Agent": "Mozilla/5.0 (compatible; PulseIngestBot/1.0)"},
                    timeout=self.probe_timeout_seconds,
                    follow_redirects=True,
                )
                if response.status_code < 400:
                    successes += 1
                else:
                    errors.append(f"{source.url}: HTTP {response.status_code}")
            except httpx.HTTPError as e:
                errors.append(f"{source.url}: {e}")
            total_ms += (time.perf_counter() - started) * 1000

        rate = successes / len(self.probe_sources)
        if rate > self.thresholds.feeds_up:
            status = ServiceStatus.UP
        elif rate > self.thresholds.feeds_degraded:
            status = ServiceStatus.DEGRADED
        else:
            status = ServiceStatus.DOWN

        return ServiceHealth(
            name=FEEDS_SERVICE,
            status=status,
            response_time_ms=round(total_ms / len(self.probe_sources), 1),
            error_rate=1 - rate,
            last_check=self._now(),
            details="; ".join(errors) or None,
        )

    async def check_store(self) -> ServiceHealth:
        started = time.perf_counter()
        try:
            await self.store.ping()
        except PersistenceError as e:
            return ServiceHealth(
                name=STORE_SERVICE,
                status=ServiceStatus.DOWN,
                response_time_ms=round((time.perf_counter() - started) * 1000, 1),
                error_rate=1.0,
                last_check=self._now(),
                details=e.message,
            )
        return ServiceHealth(
            name=STORE_SERVICE,
            status=ServiceStatus.UP,
            response_time_ms=round((time.perf_counter() - started) * 1000, 1),
            last_check=self._now(),
        )

    async def check_kv(self) -> ServiceHealth:
        started = time.perf_counter()
        key = f"{HEALTH_CHECK_PREFIX}{int(self._clock() * 1000)}"
        try:
            await self.kv.put(key, HEALTH_CHECK_VALUE, ttl_seconds=HEALTH_CHECK_TTL_SECONDS)
            value = await self.kv.get(key)
            elapsed = round((time.perf_counter() - started) * 1000, 1)
            if value != HEALTH_CHECK_VALUE:
                return ServiceHealth(name=KV_SERVICE, status=ServiceStatus.DEGRADED, response_time_ms=elapsed,
                                     error_rate=0.5, last_check=self._now(), details="Read/write test failed")
            await self.kv.delete(key)
        except KeyValueStoreError as e:
            return ServiceHealth(
                name=KV_SERVICE,
                status=ServiceStatus.DOWN,
                response_time_ms=round((time.perf_counter() - started) * 1000, 1),
                error_rate=1.0,
                last_check=self._now(),
                details=e.message,
            )
        return ServiceHealth(name=KV_SERVICE, status=ServiceStatus.UP, response_time_ms=elapsed, last_check=self._now())

    def performance_metrics(self, runs: List[ProcessingRun]) -> PerformanceMetrics:
        if not runs:
            return PerformanceMetrics()

        total_success = sum(r.success_count for r in runs)
        attempted = sum(r.attempted_count for r in runs)
        oldest = min(r.timestamp for r in runs)
        hours_spanned = max(1.0, (self._now() - oldest).total_seconds() / 3600)

        return PerformanceMetrics(
            runs_considered=len(runs),
            avg_processing_time_ms=sum(r.duration_ms for r in runs) / len(runs),
            success_rate=total_success / attempted if attempted else None,
            articles_per_hour=total_success / hours_spanned,
            source_success_rate=sum(r.source_success_rate for r in runs) / len(runs),
            fallback_runs=sum(1 for r in runs if r.fallback_used),
        )

    def build_alerts(self, services: List[ServiceHealth], metrics: PerformanceMetrics) -> List[Alert]:
        now = self._now()
        alerts = []

        for service in services:
            if service.status == ServiceStatus.DOWN:
                alerts.append(Alert(
                    id=f"service_down_{_service_slug(service.name)}",
                    level=AlertLevel.CRITICAL,
                    message=f"{service.name} is down: {service.details or 'Unknown error'}",
                    service=service.name,
                    timestamp=now,
                ))
            elif service.status == ServiceStatus.DEGRADED:
                alerts.append(Alert(
                    id=f"service_degraded_{_service_slug(service.name)}",
                    level=AlertLevel.WARNING,
                    message=f"{service.name} is degraded: {service.details or 'Performance issues detected'}",
                    service=service.name,
                    timestamp=now,
                ))

        if metrics.success_rate is not None and metrics.success_rate < self.thresholds.alert_success_rate:
            alerts.append(Alert(
                id="low_success_rate",
                level=AlertLevel.ERROR,
                message=f"Low success rate: {metrics.success_rate * 100:.1f}%",
                service=PROCESSING_SERVICE,
                timestamp=now,
            ))

        if metrics.source_success_rate is not None and metrics.source_success_rate < self.thresholds.alert_source_rate:
            alerts.append(Alert(
                id="rss_feeds_failing",
                level=AlertLevel.ERROR,
                message=f"RSS feeds failing: {metrics.source_success_rate * 100:.1f}% success rate",
                service=FEEDS_SERVICE,
                timestamp=now,
            ))

        if metrics.runs_considered and metrics.articles_per_hour < self.thresholds.alert_articles_per_hour:
            alerts.append(Alert(
                id="low_article_throughput",
                level=AlertLevel.WARNING,
                message=f"Low article throughput: {metrics.articles_per_hour:.1f} articles/hour",
                service=PROCESSING_SERVICE,
                timestamp=now,
            ))

        return alerts

    def overall_status(self, services: List[ServiceHealth], metrics: PerformanceMetrics) -> OverallStatus:
        t = self.thresholds
        success_rate = metrics.success_rate
        source_rate = metrics.source_success_rate

        if any(s.status == ServiceStatus.DOWN for s in services):
            return OverallStatus.CRITICAL
        if success_rate is not None and success_rate < t.critical_success_rate:
            return OverallStatus.CRITICAL

        if any(s.status == ServiceStatus.DEGRADED for s in services):
            return OverallStatus.DEGRADED
        if success_rate is not None and success_rate < t.degraded_success_rate:
            return OverallStatus.DEGRADED
        if source_rate is not None and source_rate < t.degraded_source_rate:
            return OverallStatus.DEGRADED

        return OverallStatus.HEALTHY

    async def _window_runs(self) -> List[ProcessingRun]:
        try:
            return await self.recorder.recent_runs(self.window_hours)
        except KeyValueStoreError as e:
            logger.error("recent_runs_unavailable", error=e.message)
            return []

    async def health(self, runs: Optional[List[ProcessingRun]] = None) -> HealthReport:
        services = [
            await self.check_feeds(),
            await self.check_store(),
            await self.check_kv(),
        ]
        if runs is None:
            runs = await self._window_runs()

        metrics = self.performance_metrics(runs)
        report = HealthReport(
            status=self.overall_status(services, metrics),
            timestamp=self._now(),
            services=services,
            metrics=metrics,
            alerts=self.build_alerts(services, metrics),
        )
        logger.info(
            "health_report_generated",
            status=report.status.value,
            alerts=len(report.alerts),
            runs_considered=metrics.runs_considered,
        )
        return report

    def error_analysis(self, runs: List[ProcessingRun]) -> Dict[str, Any]:
        errors = [error for run in runs for error in run.errors]

        by_category = Counter(e.category.value for e in errors)
        by_message = Counter(e.message for e in errors)
        by_host = Counter(extract_domain(e.url) if e.url else e.source_id for e in errors)
        recent = sorted(errors, key=lambda e: e.timestamp, reverse=True)[:20]

        return {
            "total_errors": len(errors),
            "errors_by_category": dict(by_category),
            "top_error_messages": [
                {"message": message, "count": count} for message, count in by_message.most_common(10)
            ],
            "errors_by_host": dict(by_host),
            "recent_errors": [e.model_dump(mode="json") for e in recent],
        }

    async def dashboard(self) -> Dict[str, Any]:
        runs = await self._window_runs()
        report = await self.health(runs)
        analysis = self.error_analysis(runs)

        return {
            "health": report.model_dump(mode="json"),
            "errors": analysis,
            "recent_activity": [r.model_dump(mode="json") for r in runs[:10]],
            "summary": {
                "total_runs": len(runs),
                "avg_success_rate": (
                    sum(r.success_count / max(r.attempted_count, 1) for r in runs) / len(runs)
                    if runs else 0.0
                ),
                "total_articles_processed": sum(r.success_count for r in runs),
                "total_errors": analysis["total_errors"],
            },
        }
