"""
Builds every pipeline component from Settings and hands them to the routes.

Components never read settings themselves; the option objects built here are
the only place configuration flows in.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import httpx
import openai
import structlog
from fastapi import Request
from sqlalchemy.engine import Engine

from ..config import Settings
from ..core.database import build_engine, build_session_factory
from ..dedup.engine import DeduplicationEngine
from ..fallback.aggregator import FallbackAggregator, FallbackOptions
from ..fallback.gnews_client import GNewsClient
from ..fallback.usage_tracker import UsageTracker
from ..monitoring.health import HealthMonitor
from ..monitoring.run_recorder import RunRecorder
from ..pipeline.orchestrator import PipelineOptions, PipelineOrchestrator
from ..pipeline.watermark import WatermarkStore
from ..services.content_scraper import HttpContentScraper
from ..services.enrichment import OpenRouterEnricher
from ..services.supabase_store import SupabaseArticleStore
from ..sources.fetcher import FeedFetcher
from ..sources.orchestrator import FetchOrchestrator
from ..sources.registry import DEFAULT_POLICY_OVERRIDES, SourceRegistry, build_registry
from ..storage.kv_store import InMemoryKeyValueStore, KeyValueStore
from ..storage.sql_kv_store import SqlKeyValueStore

logger = structlog.get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass
class Services:
    settings: Settings
    kv: KeyValueStore
    registry: SourceRegistry
    fetch_orchestrator: FetchOrchestrator
    usage: UsageTracker
    fallback: FallbackAggregator
    dedup: DeduplicationEngine
    store: SupabaseArticleStore
    watermark: WatermarkStore
    recorder: RunRecorder
    health: HealthMonitor
    pipeline: PipelineOrchestrator
    engine: Optional[Engine] = None
    http_clients: List[httpx.AsyncClient] = field(default_factory=list)
    ai_client: Optional[openai.AsyncOpenAI] = None

    async def aclose(self) -> None:
        for client in self.http_clients:
            await client.aclose()
        if self.ai_client is not None:
            await self.ai_client.close()
        if self.engine is not None:
            self.engine.dispose()


def build_kv_store(settings: Settings) -> tuple:
    if settings.kv_backend == "memory":
        logger.warning("kv_backend_in_memory", detail="state is lost on restart")
        return InMemoryKeyValueStore(), None

    engine = build_engine(settings.database_url, echo=settings.debug)
    return SqlKeyValueStore(build_session_factory(engine)), engine


def build_services(settings: Settings, kv: Optional[KeyValueStore] = None) -> Services:
    engine = None
    if kv is None:
        kv, engine = build_kv_store(settings)

    feed_client = httpx.AsyncClient(timeout=settings.feed_timeout_seconds)
    scrape_client = httpx.AsyncClient(timeout=settings.scraper_timeout_seconds)
    api_client = httpx.AsyncClient(timeout=settings.store_timeout_seconds)

    registry = build_registry(settings.feed_urls, DEFAULT_POLICY_OVERRIDES)
    fetch_orchestrator = FetchOrchestrator(FeedFetcher(feed_client))

    usage = UsageTracker(
        kv,
        daily_limit=settings.fallback_daily_limit,
        provider_limit=settings.fallback_provider_limit,
    )
    gnews = None
    if settings.fallback_api_key:
        gnews = GNewsClient(
            api_client,
            api_key=settings.fallback_api_key,
            base_url=settings.fallback_base_url,
            country=settings.fallback_country,
            language=settings.fallback_language,
            articles_per_request=settings.fallback_articles_per_request,
        )
    else:
        logger.info("fallback_disabled", reason="no_api_key")

    fallback = FallbackAggregator(
        gnews,
        usage,
        kv,
        FallbackOptions(
            min_primary_articles=settings.min_primary_articles,
            max_queries_per_run=settings.fallback_max_queries_per_run,
            min_interval_seconds=settings.fallback_min_interval_seconds,
            query_cache_ttl_seconds=settings.fallback_query_cache_ttl_hours * 60 * 60,
            queries=tuple(settings.fallback_queries),
        ),
    )

    dedup = DeduplicationEngine(
        kv,
        max_size=settings.identity_cache_max_size,
        ttl_seconds=settings.identity_cache_ttl_days * DAY_SECONDS,
        threshold=settings.similarity_threshold,
    )

    ai_client = None
    if settings.enrichment_api_key:
        ai_client = openai.AsyncOpenAI(
            api_key=settings.enrichment_api_key,
            base_url=settings.enrichment_base_url,
            timeout=settings.enrichment_timeout_seconds,
        )
    else:
        logger.warning("enrichment_not_configured")

    store = SupabaseArticleStore(api_client, settings.store_url, settings.store_key)
    watermark = WatermarkStore(kv, default_lookback_hours=settings.default_lookback_hours)
    recorder = RunRecorder(
        kv,
        retention_seconds=settings.run_retention_days * DAY_SECONDS,
        index_size=settings.recent_runs_index_size,
    )
    health = HealthMonitor(
        kv,
        recorder,
        store,
        feed_client,
        probe_sources=registry.sample(settings.health_probe_sample_size),
        probe_timeout_seconds=settings.health_probe_timeout_seconds,
    )

    pipeline = PipelineOrchestrator(
        registry=registry,
        fetcher=fetch_orchestrator,
        fallback=fallback,
        dedup=dedup,
        scraper=HttpContentScraper(
            scrape_client,
            min_content_length=settings.min_content_length,
            scraper_api_key=settings.scraper_api_key,
        ),
        enricher=OpenRouterEnricher(ai_client, settings.enrichment_models),
        store=store,
        watermark=watermark,
        recorder=recorder,
        kv=kv,
        options=PipelineOptions(
            fallback_max_articles=settings.fallback_max_articles,
            run_deadline_seconds=settings.run_deadline_seconds,
        ),
    )

    logger.info(
        "services_built",
        sources=len(registry),
        kv_backend=type(kv).__name__,
        fallback_enabled=fallback.enabled,
    )

    return Services(
        settings=settings,
        kv=kv,
        registry=registry,
        fetch_orchestrator=fetch_orchestrator,
        usage=usage,
        fallback=fallback,
        dedup=dedup,
        store=store,
        watermark=watermark,
        recorder=recorder,
        health=health,
        pipeline=pipeline,
        engine=engine,
        http_clients=[feed_client, scrape_client, api_client],
        ai_client=ai_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
