import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from pulse_ingest.models.article import Article, ScrapedContent
from pulse_ingest.storage.kv_store import InMemoryKeyValueStore

# 2024-01-01T00:00:00Z
START_TS = 1704067200.0
START = datetime.fromtimestamp(START_TS, tz=timezone.utc)


HEADLINES = [
    "Treasury unveils plan to reduce public debt",
    "Harambee Stars name squad for regional tournament",
    "Safaricom launches new mobile money feature",
    "Heavy rains cause flooding across western counties",
    "Teachers union threatens strike over delayed pay",
    "Nairobi expressway toll rates revised upward",
    "Maasai Mara records surge in tourist arrivals",
    "Central bank holds benchmark lending rate steady",
    "Kipchoge confirms entry for Berlin marathon",
    "Court suspends controversial housing levy deductions",
    "Coffee farmers receive improved payouts this season",
    "Mombasa port cargo volumes climb to record high",
]


class FakeClock:
    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def make_article():
    def _make(index: int = 1, title: str = None, link: str = None, published_at: datetime = None, **kwargs):
        return Article(
            title=title or (HEADLINES[index - 1] if 0 < index <= len(HEADLINES) else f"Kisumu regional bulletin {index}"),
            link=link or f"https://www.capitalfm.co.ke/news/2024/01/story-{index}",
            published_at=published_at or START + timedelta(minutes=index),
            source_name=kwargs.pop("source_name", "capitalfm.co.ke"),
            **kwargs,
        )
    return _make


@pytest.fixture
def scraped_content():
    return ScrapedContent(
        title="Scraped title",
        content="Nairobi lawmakers passed the county budget on Tuesday. " * 10,
        image_url="https://cdn.capitalfm.co.ke/images/budget.jpg",
    )


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.exists = AsyncMock(return_value=False)
    store.store = AsyncMock()
    store.stats = AsyncMock(return_value={"total_articles": 0, "today_articles": 0, "last_processed": None})
    store.ping = AsyncMock()
    return store


@pytest.fixture
def sample_rss_feed():
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Capital FM News</title>
    <link>https://www.capitalfm.co.ke/news</link>
    <item>
      <title>Treasury unveils new plan to cut public debt</title>
      <link>https://www.capitalfm.co.ke/news/2024/01/treasury-debt-plan</link>
      <pubDate>Mon, 01 Jan 2024 08:00:00 GMT</pubDate>
      <description><![CDATA[<p>The National Treasury has <b>unveiled</b> a plan.</p>]]></description>
      <media:content url="https://cdn.capitalfm.co.ke/images/treasury.jpg" medium="image" />
    </item>
    <item>
      <title>Short one</title>
      <link>https://www.capitalfm.co.ke/news/2024/01/short</link>
      <pubDate>Mon, 01 Jan 2024 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Sponsored content: win a brand new car today</title>
      <link>https://www.capitalfm.co.ke/news/2024/01/promo</link>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Harambee Stars name squad for regional tournament</title>
      <link>https://www.capitalfm.co.ke/sports/2024/01/harambee-squad</link>
      <pubDate>Mon, 01 Jan 2024 11:00:00 GMT</pubDate>
      <description>Coach names 23 players.</description>
    </item>
  </channel>
</rss>"""


@pytest.fixture
def sample_atom_feed():
    return b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Citizen Digital</title>
  <id>https://www.citizen.digital/</id>
  <updated>2024-01-01T12:00:00Z</updated>
  <entry>
    <title>Safaricom rolls out new mobile money feature</title>
    <link rel="alternate" href="https://www.citizen.digital/news/safaricom-feature"/>
    <id>https://www.citizen.digital/news/safaricom-feature</id>
    <updated>2024-01-01T12:00:00Z</updated>
    <summary>Customers can now split bills.</summary>
  </entry>
</feed>"""
