import pytest
from datetime import datetime, timezone

from pulse_ingest.dedup.engine import DeduplicationEngine, title_similarity
from pulse_ingest.models.article import Article
from pulse_ingest.storage.kv_store import TITLE_CACHE_KEY, URL_CACHE_KEY


@pytest.fixture
def engine(kv):
    return DeduplicationEngine(kv, max_size=2000, threshold=0.85)


class TestTitleSimilarity:
    def test_identical_titles_score_one(self):
        assert title_similarity("kenya launches digital tax", "kenya launches digital tax") == 1.0

    def test_unrelated_titles_score_low(self):
        assert title_similarity("harambee stars win opener", "treasury unveils debt plan") == 0.0

    def test_short_words_are_ignored(self):
        assert title_similarity("a b c", "a b c") == 0.0

    def test_three_letter_words_do_not_dilute_identical_titles(self):
        title = "new tax law for all kenyans"

        assert title_similarity(title, title) == 1.0


class TestDeduplicationEngine:
    @pytest.mark.asyncio
    async def test_near_duplicate_in_same_batch_keeps_first(self, engine):
        first = Article(
            title="Kenya Launches X",
            link="http://a.com/1",
            published_at=datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc),
            source_name="a.com",
        )
        second = Article(
            title="Kenya launches x!!",
            link="http://a.com/1-amp",
            published_at=datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc),
            source_name="a.com",
        )

        result = await engine.dedupe([first, second])

        assert result.unique == [first]
        assert result.stats.batch_duplicates == 1
        assert result.stats.cache_hits == 0

    @pytest.mark.asyncio
    async def test_repeated_link_in_same_batch_is_a_batch_duplicate(self, engine, make_article):
        article = make_article(1)
        retitled = make_article(1, title="Completely different headline for the story")

        result = await engine.dedupe([article, retitled])

        assert result.unique == [article]
        assert result.stats.batch_duplicates == 1
        assert result.stats.cache_hits == 0
        assert result.stats.new_entries_cached == 1

    @pytest.mark.asyncio
    async def test_similar_titles_above_threshold_are_dropped(self, engine, make_article):
        original = make_article(1, title="Kenyan Government Announces Sweeping Education Reforms")
        syndicated = make_article(2, title="Kenyan Government Announces Sweeping Education Reforms - KE")
        different = make_article(3, title="Safaricom reports record mobile money volumes")

        result = await engine.dedupe([original, syndicated, different])

        assert result.unique == [original, different]

    @pytest.mark.asyncio
    async def test_second_pass_over_same_input_yields_nothing_new(self, engine, make_article):
        batch = [make_article(i) for i in range(1, 6)]

        first = await engine.dedupe(batch)
        second = await engine.dedupe(batch)

        assert len(first.unique) == 5
        assert second.unique == []
        assert second.stats.cache_hits == 5

    @pytest.mark.asyncio
    async def test_url_match_alone_counts_as_seen(self, engine, make_article):
        await engine.dedupe([make_article(1)])

        retitled = make_article(1, title="Completely different headline for the story")
        result = await engine.dedupe([retitled])

        assert result.unique == []

    @pytest.mark.asyncio
    async def test_identity_sets_keep_most_recent_entries(self, kv, make_article):
        engine = DeduplicationEngine(kv, max_size=3)

        await engine.dedupe([make_article(i) for i in range(1, 6)])

        titles = await kv.get_json(TITLE_CACHE_KEY)
        urls = await kv.get_json(URL_CACHE_KEY)
        assert len(titles) == 3
        assert urls == [make_article(i).link.lower() for i in (3, 4, 5)]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_touch_identity_sets(self, engine, kv, make_article):
        result = await engine.dedupe([make_article(1), make_article(2)], persist=False)

        assert len(result.unique) == 2
        assert await kv.get(TITLE_CACHE_KEY) is None
        assert await kv.get(URL_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_released_articles_are_seen_as_new_again(self, engine, make_article):
        failed = make_article(2)
        await engine.dedupe([make_article(1), failed])

        await engine.release([failed])
        result = await engine.dedupe([make_article(1), failed])

        assert result.unique == [failed]

    @pytest.mark.asyncio
    async def test_identity_sets_expire(self, engine, clock, make_article):
        await engine.dedupe([make_article(1)])
        clock.advance(7 * 24 * 60 * 60 + 1)

        result = await engine.dedupe([make_article(1)])

        assert len(result.unique) == 1
