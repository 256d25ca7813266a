"""
Top-level ingestion run.

    ReadWatermark -> FetchPrimary -> [FetchFallback] -> Dedupe
        -> ProcessEach -> AdvanceWatermark -> RecordRun

Per-source and per-article failures are recorded and never abort the run.
Anything else raised during the run is fatal: an error report and a failed
run record are written best-effort, then the error propagates to the caller.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from ..exceptions import (
    ArticleValidationError,
    FallbackApiError,
    IngestError,
    KeyValueStoreError,
    RunDeadlineExceeded,
    RunInProgressError,
)
from ..dedup.engine import DeduplicationEngine
from ..fallback.aggregator import FallbackAggregator
from ..fallback.gnews_client import SOURCE_ID as FALLBACK_SOURCE_ID
from ..models.article import Article, ProcessedArticle
from ..models.errors import FetchError
from ..models.monitoring import ProcessingRun
from ..monitoring.run_recorder import RunRecorder
from ..services.base import ArticleStore, ContentScraper, Enricher
from ..sources.orchestrator import FetchOrchestrator
from ..sources.registry import SourceRegistry
from ..storage.kv_store import KeyValueStore, RUN_LOCK_KEY
from ..utils.url_utils import source_id_for
from .watermark import WatermarkStore

logger = structlog.get_logger(__name__)


def validate_processed(processed: ProcessedArticle) -> None:
    missing = [name for name in ("title", "slug", "content", "source_url") if not getattr(processed, name)]
    if missing:
        raise ArticleValidationError(
            f"Processed article is missing {', '.join(missing)}",
            url=processed.source_url or None,
        )


@dataclass(frozen=True)
class PipelineOptions:
    fallback_max_articles: int = 25
    run_deadline_seconds: float = 600.0


@dataclass
class RunState:
    run_id: str
    trigger: str
    started_at: datetime
    started_perf: float
    articles_processed: int = 0
    success_count: int = 0
    skipped_count: int = 0
    source_success_rate: float = 0.0
    fallback_used: bool = False
    errors: List[FetchError] = field(default_factory=list)
    # deduped articles whose identities are cached but not yet stored
    pending: List[Article] = field(default_factory=list)

    def to_run(self, status: str = "completed") -> ProcessingRun:
        return ProcessingRun(
            id=self.run_id,
            timestamp=self.started_at,
            duration_ms=int((time.perf_counter() - self.started_perf) * 1000),
            articles_processed=self.articles_processed,
            success_count=self.success_count,
            error_count=len(self.errors),
            skipped_count=self.skipped_count,
            source_success_rate=self.source_success_rate,
            fallback_used=self.fallback_used,
            trigger=self.trigger,
            status=status,
            errors=list(self.errors),
        )


class PipelineOrchestrator:

    def __init__(
        self,
        registry: SourceRegistry,
        fetcher: FetchOrchestrator,
        fallback: FallbackAggregator,
        dedup: DeduplicationEngine,
        scraper: ContentScraper,
        enricher: Enricher,
        store: ArticleStore,
        watermark: WatermarkStore,
        recorder: RunRecorder,
        kv: KeyValueStore,
        options: PipelineOptions = PipelineOptions(),
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.fetcher = fetcher
        self.fallback = fallback
        self.dedup = dedup
        self.scraper = scraper
        self.enricher = enricher
        self.store = store
        self.watermark = watermark
        self.recorder = recorder
        self.kv = kv
        self.options = options
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self, trigger: str = "scheduled") -> ProcessingRun:
        """
        Execute one run. Raises RunInProgressError when another run holds the
        in-process lock or the KV lease.
        """
        if self._lock.locked():
            raise RunInProgressError("A pipeline run is already in progress")

        async with self._lock:
            state = RunState(
                run_id=self.recorder.new_run_id(),
                trigger=trigger,
                started_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
                started_perf=time.perf_counter(),
            )
            logger.info("pipeline_run_started", run_id=state.run_id, trigger=trigger)

            try:
                if not await self._acquire_lease(state.run_id):
                    raise RunInProgressError("Another pipeline run holds the run lease")
                return await asyncio.wait_for(self._execute(state), timeout=self.options.run_deadline_seconds)
            except asyncio.TimeoutError:
                error = RunDeadlineExceeded(
                    f"Run exceeded its {self.options.run_deadline_seconds}s deadline",
                    details={"run_id": state.run_id},
                )
                await self._record_failure(state, error)
                raise error
            except RunInProgressError:
                raise
            except IngestError as e:
                await self._record_failure(state, e)
                raise
            except Exception as e:
                error = IngestError(str(e) or type(e).__name__, details={"exception": type(e).__name__})
                await self._record_failure(state, error)
                raise error from e
            finally:
                await self._release_lease(state.run_id)

    async def _acquire_lease(self, run_id: str) -> bool:
        # read-then-write; narrows but does not close the cross-process window
        holder = await self.kv.get(RUN_LOCK_KEY)
        if holder and holder != run_id:
            logger.warning("pipeline_run_lease_held", holder=holder, run_id=run_id)
            return False
        ttl = int(self.options.run_deadline_seconds) + 60
        await self.kv.put(RUN_LOCK_KEY, run_id, ttl_seconds=ttl)
        return True

    async def _release_lease(self, run_id: str) -> None:
        try:
            if await self.kv.get(RUN_LOCK_KEY) == run_id:
                await self.kv.delete(RUN_LOCK_KEY)
        except KeyValueStoreError as e:
            logger.error("pipeline_run_lease_release_failed", run_id=run_id, error=e.message)

    async def _execute(self, state: RunState) -> ProcessingRun:
        watermark = await self.watermark.read()

        candidates = await self._collect_candidates(state, watermark)
        if not candidates:
            logger.info("pipeline_empty_cycle", run_id=state.run_id, errors=len(state.errors))
            return await self._finish(state)

        deduped = await self.dedup.dedupe(candidates)
        state.articles_processed = len(deduped.unique)
        if deduped.stats.persisted:
            state.pending = list(deduped.unique)
        if not deduped.unique:
            logger.info("pipeline_nothing_new", run_id=state.run_id, candidates=len(candidates))
            return await self._finish(state)

        newest_success = await self._process_each(state, deduped.unique)
        if newest_success is not None:
            await self.watermark.advance(newest_success)

        return await self._finish(state)

    async def _collect_candidates(self, state: RunState, watermark: datetime) -> List[Article]:
        outcome = await self.fetcher.run_all(self.registry, self.registry.policy_by_source_id())
        state.errors.extend(outcome.errors)
        state.source_success_rate = outcome.source_success_rate

        candidates = outcome.newer_than(watermark)
        logger.info(
            "primary_candidates_selected",
            run_id=state.run_id,
            fetched=len(outcome.articles),
            newer_than_watermark=len(candidates),
            watermark=watermark.isoformat(),
        )

        if not await self.fallback.should_use_fallback(len(candidates)):
            return candidates

        try:
            result = await self.fallback.fetch_fallback(watermark, self.options.fallback_max_articles)
        except KeyValueStoreError as e:
            error = FallbackApiError(f"Fallback state unavailable: {e.message}", source_id=FALLBACK_SOURCE_ID)
            logger.error("fallback_failed", run_id=state.run_id, category=error.category.value, error=error.message)
            state.errors.append(error.to_fetch_error())
            return candidates

        state.errors.extend(result.errors)
        state.fallback_used = result.requests_made > 0 or bool(result.articles)

        extra = [a for a in result.articles if a.published_at > watermark]
        return sorted(candidates + extra, key=lambda a: a.published_at)

    async def _process_each(self, state: RunState, articles: List[Article]) -> Optional[datetime]:
        newest_success: Optional[datetime] = None
        failed: List[Article] = []

        for article in articles:
            try:
                if await self.store.exists(article.link):
                    state.skipped_count += 1
                    self._settle(state, article)
                    logger.info("article_already_stored", run_id=state.run_id, url=article.link)
                    continue

                scraped = await self.scraper.fetch_body(article.link)
                processed = await self.enricher.enrich(article, scraped)
                validate_processed(processed)
                await self.store.store(processed)
            except Exception as e:
                error = e if isinstance(e, IngestError) else IngestError(str(e) or type(e).__name__)
                error.source_id = error.source_id or source_id_for(article.link)
                error.url = error.url or article.link
                logger.error(
                    "article_processing_failed",
                    run_id=state.run_id,
                    category=error.category.value,
                    url=article.link,
                    timestamp=error.timestamp.isoformat(),
                    attempt=error.attempt,
                    error=error.message,
                    exc_info=not isinstance(e, IngestError),
                )
                state.errors.append(error.to_fetch_error())
                failed.append(article)
                continue

            state.success_count += 1
            self._settle(state, article)
            if newest_success is None or article.published_at > newest_success:
                newest_success = article.published_at

        if failed:
            await self.dedup.release(failed)
            for article in failed:
                self._settle(state, article)
        return newest_success

    @staticmethod
    def _settle(state: RunState, article: Article) -> None:
        if article in state.pending:
            state.pending.remove(article)

    async def _finish(self, state: RunState) -> ProcessingRun:
        run = state.to_run()
        if run.errors:
            await self.recorder.store_error_report(run.errors, context={"run_id": run.id, "trigger": run.trigger})
        await self.recorder.record_run(run)

        logger.info(
            "pipeline_run_completed",
            run_id=run.id,
            articles_processed=run.articles_processed,
            success_count=run.success_count,
            error_count=run.error_count,
            skipped_count=run.skipped_count,
            fallback_used=run.fallback_used,
            duration_ms=run.duration_ms,
        )
        return run

    async def _record_failure(self, state: RunState, error: IngestError) -> None:
        logger.error(
            "pipeline_run_failed",
            run_id=state.run_id,
            category=error.category.value,
            error=error.message,
        )
        state.errors.append(error.to_fetch_error())
        run = state.to_run(status="failed")

        if state.pending:
            try:
                await self.dedup.release(state.pending)
            except Exception as release_error:
                logger.error("pipeline_pending_release_failed", run_id=state.run_id, error=str(release_error))
            else:
                logger.info("pipeline_pending_released", run_id=state.run_id, articles=len(state.pending))
                state.pending = []

        try:
            await self.recorder.store_error_report(
                run.errors, context={"run_id": run.id, "trigger": run.trigger, "fatal": error.message}
            )
            await self.recorder.record_run(run)
        except Exception as record_error:
            logger.error("pipeline_failure_record_failed", run_id=state.run_id, error=str(record_error))
