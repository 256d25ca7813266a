from dataclasses import replace

import httpx
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from pulse_ingest.exceptions import FeedBlockedError, SourceFetchError
from pulse_ingest.sources.fetcher import FeedFetcher, looks_like_html
from pulse_ingest.sources.orchestrator import FetchOrchestrator, FetchOutcome
from pulse_ingest.sources.parsing import (
    categorize_article,
    normalize_date,
    parse_feed_document,
)
from pulse_ingest.sources.registry import (
    DEFAULT_POLICY,
    DEFAULT_POLICY_OVERRIDES,
    GUARDED_POLICY,
    SourcePolicy,
    USER_AGENTS,
    build_registry,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)

FEED_URL = "https://www.capitalfm.co.ke/news/rss/"


def feed_source(url=FEED_URL, policy=None):
    registry = build_registry([url], DEFAULT_POLICY_OVERRIDES)
    source = registry.sources[0]
    if policy is not None:
        source = replace(source, policy=policy)
    return source


class TestFeedParsing:
    def test_rss_items_are_filtered_and_mapped(self, sample_rss_feed):
        _, articles = parse_feed_document(sample_rss_feed, "capitalfm.co.ke")

        titles = [a.title for a in articles]
        assert titles == [
            "Treasury unveils new plan to cut public debt",
            "Harambee Stars name squad for regional tournament",
        ]
        first = articles[0]
        assert first.link == "https://www.capitalfm.co.ke/news/2024/01/treasury-debt-plan"
        assert first.published_at == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert first.description == "The National Treasury has unveiled a plan."
        assert first.image_url == "https://cdn.capitalfm.co.ke/images/treasury.jpg"
        assert first.source_name == "capitalfm.co.ke"

    def test_atom_entries_use_alternate_link_and_updated(self, sample_atom_feed):
        _, articles = parse_feed_document(sample_atom_feed, "citizen.digital")

        assert len(articles) == 1
        assert articles[0].link == "https://www.citizen.digital/news/safaricom-feature"
        assert articles[0].published_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert articles[0].description == "Customers can now split bills."

    def test_unparseable_date_falls_back_to_now(self):
        feed = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>T</title>
<item>
  <title>County assembly debates new housing levy</title>
  <link>https://ntvkenya.co.ke/news/housing-levy</link>
  <pubDate>unknown</pubDate>
</item>
</channel></rss>"""
        _, articles = parse_feed_document(feed, "ntvkenya.co.ke", now=START)

        assert len(articles) == 1
        assert articles[0].published_at == START

    def test_items_without_any_date_are_dropped(self):
        feed = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>T</title>
<item>
  <title>County assembly debates new housing levy</title>
  <link>https://ntvkenya.co.ke/news/housing-levy</link>
</item>
</channel></rss>"""
        _, articles = parse_feed_document(feed, "ntvkenya.co.ke")
        assert articles == []

    def test_normalize_date_understands_east_africa_time(self):
        parsed = normalize_date("Mon, 01 Jan 2024 10:00:00 EAT")
        assert parsed == datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)

    def test_normalize_date_strips_parenthetical_zone_names(self):
        parsed = normalize_date("2024-01-01 10:00:00 +0300 (East Africa Time)")
        assert parsed == datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)

    def test_categorize_article(self):
        assert categorize_article("Parliament passes finance bill") == "Politics"
        assert categorize_article("Harambee Stars win opener") == "Sports"
        assert categorize_article("Weather update for the weekend") == "Latest News"


class TestSourceRegistry:
    def test_build_registry_dedupes_by_host_and_applies_overrides(self):
        registry = build_registry(
            [
                "https://www.citizen.digital/rss",
                "https://citizen.digital/feed",
                "https://ntvkenya.co.ke/feed",
            ],
            DEFAULT_POLICY_OVERRIDES,
        )

        assert len(registry) == 2
        assert registry.get("citizen.digital").policy == GUARDED_POLICY
        assert registry.get("ntvkenya.co.ke").policy == DEFAULT_POLICY
        assert registry.sample(1)[0].source_id == "citizen.digital"

    def test_backoff_is_exponential_and_capped(self):
        policy = SourcePolicy(backoff_base_seconds=1.0, backoff_cap_seconds=3.0)
        assert policy.backoff_for(1) == 2.0
        assert policy.backoff_for(2) == 3.0
        assert policy.backoff_for(5) == 3.0


class TestFeedFetcher:
    @pytest.mark.asyncio
    async def test_fetch_success_sends_bot_resistant_headers(self, sample_rss_feed, no_sleep):
        seen = {}

        def handler(request):
            seen.update({k.lower(): v for k, v in request.headers.items()})
            return httpx.Response(200, content=sample_rss_feed)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = FeedFetcher(client, sleep=no_sleep)
            articles = await fetcher.fetch(feed_source())

        assert len(articles) == 2
        assert seen["user-agent"] in USER_AGENTS
        assert seen["referer"] == "https://www.capitalfm.co.ke"
        assert "application/rss+xml" in seen["accept"]
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_after_server_error(self, sample_rss_feed, no_sleep):
        responses = iter([httpx.Response(503), httpx.Response(200, content=sample_rss_feed)])

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: next(responses))) as client:
            fetcher = FeedFetcher(client, sleep=no_sleep)
            articles = await fetcher.fetch(feed_source())

        assert len(articles) == 2
        no_sleep.assert_awaited_once_with(DEFAULT_POLICY.backoff_for(1))

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = FeedFetcher(client, sleep=no_sleep)
            with pytest.raises(SourceFetchError) as exc_info:
                await fetcher.fetch(feed_source())

        assert len(calls) == DEFAULT_POLICY.max_retries
        assert exc_info.value.http_status == 404
        assert exc_info.value.attempt == DEFAULT_POLICY.max_retries
        assert exc_info.value.source_id == "capitalfm.co.ke"

    @pytest.mark.asyncio
    async def test_html_response_is_reported_as_blocked(self, no_sleep):
        page = b"<!DOCTYPE html><html><body>Checking your browser...</body></html>"

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=page))) as client:
            fetcher = FeedFetcher(client, sleep=no_sleep)
            with pytest.raises(FeedBlockedError):
                await fetcher.fetch(feed_source(policy=SourcePolicy(max_retries=1)))

    @pytest.mark.asyncio
    async def test_network_error_becomes_source_fetch_error(self, no_sleep):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = FeedFetcher(client, sleep=no_sleep)
            with pytest.raises(SourceFetchError) as exc_info:
                await fetcher.fetch(feed_source(policy=SourcePolicy(max_retries=3)))

        assert exc_info.value.attempt == 3
        assert no_sleep.await_count == 2

    def test_looks_like_html(self):
        assert looks_like_html(b"  <!doctype html><html></html>")
        assert not looks_like_html(b'<?xml version="1.0"?><rss></rss>')


class TestFetchOrchestrator:
    @pytest.mark.asyncio
    async def test_failed_source_does_not_stop_the_batch(self, make_article, no_sleep):
        registry = build_registry([
            "https://ntvkenya.co.ke/feed",
            "https://www.citizen.digital/rss",
            "https://www.ghafla.com/ke/feed/",
        ], DEFAULT_POLICY_OVERRIDES)

        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(side_effect=[
            [make_article(1), make_article(2)],
            SourceFetchError("HTTP 403: Forbidden", source_id="citizen.digital", http_status=403, attempt=3),
            [],
        ])

        outcome = await FetchOrchestrator(fetcher, sleep=no_sleep).run_all(registry, registry.policy_by_source_id())

        assert fetcher.fetch.await_count == 3
        assert len(outcome.articles) == 2
        assert outcome.successful_sources == 2
        assert outcome.total_sources == 3
        assert outcome.source_success_rate == pytest.approx(2 / 3)
        assert outcome.errors[0].source_id == "citizen.digital"
        assert outcome.errors[0].http_status == 403
        # delay before every source after the first, using that source's policy
        assert [c.args[0] for c in no_sleep.await_args_list] == [
            GUARDED_POLICY.request_delay_seconds,
            DEFAULT_POLICY.request_delay_seconds,
        ]

    def test_newer_than_filters_and_sorts_oldest_first(self, make_article):
        outcome = FetchOutcome(articles=[make_article(3), make_article(1), make_article(2)])

        fresh = outcome.newer_than(make_article(1).published_at)

        assert [a.link for a in fresh] == [make_article(2).link, make_article(3).link]
