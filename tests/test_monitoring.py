import httpx
import pytest
from datetime import datetime, timedelta, timezone

from pulse_ingest.exceptions import ErrorCategory, PersistenceError
from pulse_ingest.models.errors import FetchError
from pulse_ingest.models.monitoring import (
    OverallStatus,
    PerformanceMetrics,
    ProcessingRun,
    ServiceHealth,
    ServiceStatus,
)
from pulse_ingest.monitoring.health import HealthMonitor
from pulse_ingest.monitoring.run_recorder import RunRecorder
from pulse_ingest.sources.registry import build_registry

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

PROBE_URLS = [
    "https://ntvkenya.co.ke/feed",
    "https://www.capitalfm.co.ke/news/rss/",
    "https://www.citizen.digital/rss",
]


def make_run(run_id, minutes_ago=0, success=5, errors=0, processed=None, skipped=0, source_rate=1.0):
    error_list = [
        FetchError(source_id="capitalfm.co.ke", message="Scrape request timed out",
                   category=ErrorCategory.CONTENT_EXTRACTION, url=f"https://www.capitalfm.co.ke/{i}")
        for i in range(errors)
    ]
    return ProcessingRun(
        id=run_id,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        duration_ms=1200,
        articles_processed=processed if processed is not None else success + errors + skipped,
        success_count=success,
        error_count=errors,
        skipped_count=skipped,
        source_success_rate=source_rate,
        errors=error_list,
    )


def up(name):
    return ServiceHealth(name=name, status=ServiceStatus.UP, last_check=NOW)


@pytest.fixture
def recorder(kv, clock):
    return RunRecorder(kv, index_size=3, clock=clock)


def build_monitor(kv, recorder, store, clock, handler=None):
    handler = handler or (lambda request: httpx.Response(200))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = build_registry(PROBE_URLS)
    return HealthMonitor(kv, recorder, store, client, probe_sources=registry.sample(3), clock=clock)


class TestRunRecorder:
    @pytest.mark.asyncio
    async def test_run_index_is_newest_first_and_trimmed(self, recorder):
        for i in range(5):
            await recorder.record_run(make_run(f"run_{i}", minutes_ago=10 - i))

        runs = await recorder.recent_runs(hours=24)
        assert [r.id for r in runs] == ["run_4", "run_3", "run_2"]
        assert (await recorder.last_run()).id == "run_4"

    @pytest.mark.asyncio
    async def test_processing_stats_accumulate(self, recorder):
        await recorder.record_run(make_run("run_a", success=3, errors=1))
        await recorder.record_run(make_run("run_b", success=4, errors=0))

        stats = await recorder.processing_stats()
        assert stats["total_processed"] == 7
        assert stats["last_run_id"] == "run_b"
        assert stats["success_rate"] == 1.0
        assert stats["errors"] == ["Scrape request timed out"]

    @pytest.mark.asyncio
    async def test_success_rate_excludes_skipped_articles(self, recorder):
        await recorder.record_run(make_run("run_a", success=2, errors=2, skipped=4))

        stats = await recorder.processing_stats()
        assert stats["success_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_recent_runs_respects_window(self, recorder, clock):
        await recorder.record_run(make_run("old", minutes_ago=60 * 30))
        await recorder.record_run(make_run("new", minutes_ago=5))

        assert [r.id for r in await recorder.recent_runs(hours=24)] == ["new"]

    @pytest.mark.asyncio
    async def test_run_records_expire_after_retention(self, kv, clock):
        recorder = RunRecorder(kv, retention_seconds=60, clock=clock)
        await recorder.record_run(make_run("run_x"))
        clock.advance(61)

        assert await recorder.get_run("run_x") is None

    @pytest.mark.asyncio
    async def test_error_report_summarises_by_category(self, recorder, kv):
        errors = make_run("r", errors=2).errors + [
            FetchError(source_id="gnews", message="quota", category=ErrorCategory.FALLBACK_API)
        ]

        key = await recorder.store_error_report(errors, context={"run_id": "r"})

        report = await kv.get_json(key)
        assert key.startswith("error_report_")
        assert report["total_errors"] == 3
        assert report["summary"] == {"CONTENT_EXTRACTION": 2, "FALLBACK_API": 1}
        assert report["context"] == {"run_id": "r"}

    def test_new_run_id_format(self, recorder):
        run_id = recorder.new_run_id()
        assert run_id.startswith("run_1704067200000_")
        assert len(run_id.split("_")[-1]) == 9


class TestHealthRules:
    @pytest.fixture
    def monitor(self, kv, recorder, mock_store, clock):
        return build_monitor(kv, recorder, mock_store, clock)

    def test_healthy_when_everything_is_up(self, monitor):
        metrics = PerformanceMetrics(runs_considered=1, success_rate=0.9, source_success_rate=0.9, articles_per_hour=5)
        assert monitor.overall_status([up("Database")], metrics) == OverallStatus.HEALTHY

    def test_any_service_down_is_critical(self, monitor):
        down = ServiceHealth(name="Database", status=ServiceStatus.DOWN, last_check=NOW)
        assert monitor.overall_status([up("KV Storage"), down], PerformanceMetrics()) == OverallStatus.CRITICAL

    def test_very_low_success_rate_is_critical(self, monitor):
        metrics = PerformanceMetrics(runs_considered=1, success_rate=0.1, source_success_rate=1.0)
        assert monitor.overall_status([up("Database")], metrics) == OverallStatus.CRITICAL

    def test_moderate_success_rate_is_degraded(self, monitor):
        metrics = PerformanceMetrics(runs_considered=1, success_rate=0.6, source_success_rate=1.0)
        assert monitor.overall_status([up("Database")], metrics) == OverallStatus.DEGRADED

    def test_low_source_success_rate_is_degraded(self, monitor):
        metrics = PerformanceMetrics(runs_considered=1, success_rate=1.0, source_success_rate=0.4)
        assert monitor.overall_status([up("Database")], metrics) == OverallStatus.DEGRADED

    def test_no_runs_means_no_rate_rules(self, monitor):
        assert monitor.overall_status([up("Database")], PerformanceMetrics()) == OverallStatus.HEALTHY
        assert monitor.build_alerts([up("Database")], PerformanceMetrics()) == []

    def test_alerts_for_low_rates_and_throughput(self, monitor):
        metrics = PerformanceMetrics(runs_considered=2, success_rate=0.4, source_success_rate=0.2, articles_per_hour=0.5)

        alert_ids = {a.id for a in monitor.build_alerts([up("Database")], metrics)}

        assert alert_ids == {"low_success_rate", "rss_feeds_failing", "low_article_throughput"}

    def test_performance_metrics_over_runs(self, monitor, clock):
        clock.advance(60 * 60)
        runs = [
            make_run("a", minutes_ago=0, success=6, errors=2, source_rate=1.0),
            make_run("b", minutes_ago=0, success=2, errors=0, skipped=3, source_rate=0.5),
        ]

        metrics = monitor.performance_metrics(runs)

        assert metrics.runs_considered == 2
        assert metrics.success_rate == 0.8
        assert metrics.source_success_rate == 0.75
        assert metrics.articles_per_hour == 8.0


class TestHealthMonitor:
    @pytest.mark.asyncio
    async def test_health_report_all_up(self, kv, recorder, mock_store, clock):
        monitor = build_monitor(kv, recorder, mock_store, clock)

        report = await monitor.health()

        assert report.status == OverallStatus.HEALTHY
        assert [s.status for s in report.services] == [ServiceStatus.UP] * 3
        assert report.alerts == []

    @pytest.mark.asyncio
    async def test_store_down_is_critical_with_alert(self, kv, recorder, mock_store, clock):
        mock_store.ping.side_effect = PersistenceError("Persistence service is not configured")
        monitor = build_monitor(kv, recorder, mock_store, clock)

        report = await monitor.health()

        assert report.status == OverallStatus.CRITICAL
        assert "service_down_database" in {a.id for a in report.alerts}

    @pytest.mark.asyncio
    async def test_feed_probe_partial_failure_is_degraded(self, kv, recorder, mock_store, clock):
        def handler(request):
            if "citizen.digital" in str(request.url):
                return httpx.Response(403)
            return httpx.Response(200)

        monitor = build_monitor(kv, recorder, mock_store, clock, handler)

        feeds = await monitor.check_feeds()

        assert feeds.status == ServiceStatus.DEGRADED
        assert feeds.error_rate == pytest.approx(1 / 3)
        assert "HTTP 403" in feeds.details

    @pytest.mark.asyncio
    async def test_kv_probe_cleans_up_its_key(self, kv, recorder, mock_store, clock):
        monitor = build_monitor(kv, recorder, mock_store, clock)

        result = await monitor.check_kv()

        assert result.status == ServiceStatus.UP
        assert await kv.list_keys("health_check_") == []

    @pytest.mark.asyncio
    async def test_dashboard_combines_health_errors_and_activity(self, kv, recorder, mock_store, clock):
        await recorder.record_run(make_run("run_a", success=3, errors=2))
        monitor = build_monitor(kv, recorder, mock_store, clock)

        dashboard = await monitor.dashboard()

        assert dashboard["summary"]["total_runs"] == 1
        assert dashboard["summary"]["total_articles_processed"] == 3
        assert dashboard["errors"]["total_errors"] == 2
        assert dashboard["errors"]["errors_by_category"] == {"CONTENT_EXTRACTION": 2}
        assert dashboard["errors"]["errors_by_host"] == {"www.capitalfm.co.ke": 2}
        assert dashboard["recent_activity"][0]["id"] == "run_a"
