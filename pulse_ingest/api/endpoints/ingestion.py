from datetime import datetime, timedelta, timezone

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, status

from ...exceptions import IngestError, RunInProgressError
from ...pipeline.orchestrator import PipelineOrchestrator
from ..dependencies import Services, get_services
from ..schemas import DedupSummary, GNewsStatsResponse, RssDryRunResponse, TriggerResponse
from .monitoring import error_response

logger = structlog.get_logger(__name__)

router = APIRouter()

DRY_RUN_LOOKBACK_HOURS = 24
DRY_RUN_ERROR_LIMIT = 10
DRY_RUN_SAMPLE_SIZE = 5


async def run_manual_trigger(pipeline: PipelineOrchestrator) -> None:
    try:
        run = await pipeline.run(trigger="manual")
        logger.info("manual_run_finished", run_id=run.id, success_count=run.success_count, error_count=run.error_count)
    except RunInProgressError as e:
        logger.info("manual_run_skipped", reason=e.message)
    except IngestError as e:
        logger.error("manual_run_failed", category=e.category.value, error=e.message)
    except Exception as e:
        logger.error("manual_run_crashed", error=str(e), exc_info=True)


@router.post("/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_run(
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> TriggerResponse:
    """Fire one run out-of-band; the response does not wait for it"""
    now = datetime.now(timezone.utc)

    if services.pipeline.running:
        logger.info("manual_trigger_rejected", reason="run_in_progress")
        return TriggerResponse(started=False, message="A run is already in progress", timestamp=now)

    background_tasks.add_task(run_manual_trigger, services.pipeline)
    logger.info("manual_trigger_accepted")
    return TriggerResponse(started=True, message="Processing started", timestamp=now)


@router.get("/test-rss", response_model=RssDryRunResponse)
async def test_rss(services: Services = Depends(get_services)):
    """
    Dry run of the fetch phase: primary feeds only, identity caches read but
    not written, no fallback quota spent and nothing stored.
    """
    try:
        since = datetime.now(timezone.utc) - timedelta(hours=DRY_RUN_LOOKBACK_HOURS)
        outcome = await services.fetch_orchestrator.run_all(
            services.registry, services.registry.policy_by_source_id()
        )
        recent = outcome.newer_than(since)
        deduped = await services.dedup.dedupe(recent, persist=False)

        return RssDryRunResponse(
            sources=outcome.total_sources,
            successful_sources=outcome.successful_sources,
            source_success_rate=outcome.source_success_rate,
            articles_fetched=len(outcome.articles),
            articles_since_lookback=len(recent),
            dedup=DedupSummary(
                candidates=deduped.stats.candidates,
                unique=deduped.stats.unique,
                duplicates_filtered=deduped.stats.duplicates_filtered,
                cache_hits=deduped.stats.cache_hits,
                batch_duplicates=deduped.stats.batch_duplicates,
            ),
            errors=[e.model_dump(mode="json") for e in outcome.errors[:DRY_RUN_ERROR_LIMIT]],
            sample_articles=[a.to_dict() for a in deduped.unique[:DRY_RUN_SAMPLE_SIZE]],
            timestamp=datetime.now(timezone.utc),
        )
    except Exception as e:
        logger.error("test_rss_failed", error=str(e))
        return error_response(e)


@router.get("/gnews-stats", response_model=GNewsStatsResponse, response_model_exclude_none=True)
async def gnews_stats(services: Services = Depends(get_services)):
    if not services.fallback.enabled:
        return GNewsStatsResponse(status="unavailable", message="Fallback API key not configured")

    try:
        usage = services.usage
        counter = await usage.get_usage()
        lookups = counter.cache_hits + counter.cache_misses

        return GNewsStatsResponse(
            status="limit_reached" if counter.exhausted else "available",
            date=counter.date_key,
            calls_used=counter.calls_used,
            daily_limit=counter.daily_limit,
            provider_limit=usage.provider_limit,
            remaining=counter.remaining,
            cache_hits=counter.cache_hits,
            cache_misses=counter.cache_misses,
            cache_hit_rate=counter.cache_hits / lookups if lookups else None,
            last_call=(
                datetime.fromtimestamp(counter.last_call_timestamp, tz=timezone.utc)
                if counter.last_call_timestamp else None
            ),
        )
    except Exception as e:
        logger.error("gnews_stats_failed", error=str(e))
        return error_response(e)
