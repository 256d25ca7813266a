"""
RSS-first fetch orchestration across all registered sources.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional

import structlog

from ..exceptions import SourceFetchError
from ..models.article import Article
from ..models.errors import FetchError
from .fetcher import FeedFetcher
from .registry import FeedSource, SourcePolicy

logger = structlog.get_logger(__name__)


@dataclass
class FetchOutcome:
    articles: List[Article] = field(default_factory=list)
    errors: List[FetchError] = field(default_factory=list)
    successful_sources: int = 0
    total_sources: int = 0

    @property
    def source_success_rate(self) -> float:
        if not self.total_sources:
            return 0.0
        return self.successful_sources / self.total_sources

    def newer_than(self, watermark: datetime) -> List[Article]:
        """Articles published after the watermark, oldest first."""
        fresh = [a for a in self.articles if a.published_at > watermark]
        return sorted(fresh, key=lambda a: a.published_at)


class FetchOrchestrator:
    """
    Drives the fetcher over every source one at a time.

    A source that raises is recorded and skipped; the batch always completes.
    Each source after the first is preceded by its policy's request delay.
    """

    def __init__(
        self,
        fetcher: FeedFetcher,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self._sleep = sleep

    async def run_all(
        self,
        sources: Iterable[FeedSource],
        policy_by_source_id: Optional[Mapping[str, SourcePolicy]] = None,
    ) -> FetchOutcome:
        policies = policy_by_source_id or {}
        source_list = list(sources)
        outcome = FetchOutcome(total_sources=len(source_list))

        logger.info("primary_fetch_started", sources=len(source_list))

        for index, source in enumerate(source_list):
            policy = policies.get(source.source_id, source.policy)
            if index > 0 and policy.request_delay_seconds > 0:
                await self._sleep(policy.request_delay_seconds)

            try:
                articles = await self.fetcher.fetch(source, policy)
            except SourceFetchError as e:
                outcome.errors.append(e.to_fetch_error())
                continue

            outcome.successful_sources += 1
            outcome.articles.extend(articles)

        logger.info(
            "primary_fetch_completed",
            successful_sources=outcome.successful_sources,
            total_sources=outcome.total_sources,
            source_success_rate=round(outcome.source_success_rate, 3),
            articles=len(outcome.articles),
            errors=len(outcome.errors),
        )
        return outcome
