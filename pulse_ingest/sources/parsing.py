"""
Tolerant feed entry parsing.

feedparser already understands both RSS <item> and Atom <entry> documents;
this module pulls the fields out of whichever alternative names a source uses
and filters out anything that is not a usable article.
"""

import calendar
import re
from datetime import datetime, timezone, timedelta
from typing import Iterable, List, Optional

import feedparser
import structlog
from dateutil import parser as date_parser

from ..models.article import Article
from ..utils.string_utils import strip_html
from ..utils.url_utils import has_url_scheme, is_image_url

logger = structlog.get_logger(__name__)

MIN_TITLE_LENGTH = 10

EXCLUDE_PATTERNS = [
    re.compile(r'test\s*post', re.IGNORECASE),
    re.compile(r'lorem\s*ipsum', re.IGNORECASE),
    re.compile(r'sample\s*article', re.IGNORECASE),
    re.compile(r'^ad[\s:]', re.IGNORECASE),
    re.compile(r'advertisement', re.IGNORECASE),
    re.compile(r'sponsored\s*content', re.IGNORECASE),
]

# Timezone abbreviations for date parsing
TZINFOS = {
    "EST": timezone(timedelta(hours=-5)),
    "EDT": timezone(timedelta(hours=-4)),
    "CST": timezone(timedelta(hours=-6)),
    "CDT": timezone(timedelta(hours=-5)),
    "PST": timezone(timedelta(hours=-8)),
    "PDT": timezone(timedelta(hours=-7)),
    "GMT": timezone.utc,
    "UTC": timezone.utc,
    "BST": timezone(timedelta(hours=1)),
    "EAT": timezone(timedelta(hours=3)),
}

DATE_FIELDS = ("published", "updated", "created", "date")
DESCRIPTION_FIELDS = ("summary", "description", "subtitle")

IMG_SRC_PATTERN = re.compile(r'<img[^>]+src="([^"]+)"', re.IGNORECASE)


def is_excluded_title(title: str) -> bool:
    return any(pattern.search(title) for pattern in EXCLUDE_PATTERNS)


def is_valid_article(article: Article) -> bool:
    return bool(
        article.title
        and article.link
        and article.published_at
        and len(article.title) > MIN_TITLE_LENGTH
        and has_url_scheme(article.link)
        and not is_excluded_title(article.title)
    )


def normalize_date(raw: str, now: Optional[datetime] = None) -> datetime:
    """Parse a feed date string; unparseable values become `now` with a warning."""
    fallback = now or datetime.now(timezone.utc)
    candidates = [raw, re.sub(r'\s*\([^)]*\)', '', raw).strip()]

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = date_parser.parse(candidate, tzinfos=TZINFOS)
        except (ValueError, OverflowError, TypeError):
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    logger.warning("feed_date_unparseable", raw_date=raw, fallback=fallback.isoformat())
    return fallback


def _struct_to_datetime(value) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def extract_published_at(entry, now: Optional[datetime] = None) -> Optional[datetime]:
    """None only when the entry carries no date at all."""
    for name in DATE_FIELDS:
        parsed = entry.get(f"{name}_parsed")
        if parsed:
            dt = _struct_to_datetime(parsed)
            if dt is not None:
                return dt

    for name in DATE_FIELDS:
        raw = entry.get(name)
        if raw:
            return normalize_date(str(raw), now)
    return None


def extract_link(entry) -> str:
    link = entry.get("link")
    if link:
        return str(link).strip()

    for item in entry.get("links", []) or []:
        href = item.get("href")
        if href and item.get("rel", "alternate") == "alternate":
            return href.strip()

    guid = entry.get("id") or entry.get("guid")
    if guid and has_url_scheme(str(guid)):
        return str(guid).strip()
    return ""


def extract_description(entry) -> Optional[str]:
    for name in DESCRIPTION_FIELDS:
        value = entry.get(name)
        if value:
            return strip_html(value) or None

    for content in entry.get("content", []) or []:
        value = content.get("value")
        if value:
            return strip_html(value) or None
    return None


def extract_image_url(entry) -> Optional[str]:
    candidates: List[str] = []

    media_content = entry.get("media_content", []) or []
    candidates.extend(m.get("url") for m in media_content if "image" in (m.get("type") or m.get("medium") or ""))
    candidates.extend(t.get("url") for t in entry.get("media_thumbnail", []) or [])
    candidates.extend(m.get("url") for m in media_content)

    for enclosure in entry.get("enclosures", []) or []:
        if (enclosure.get("type") or "").startswith("image"):
            candidates.append(enclosure.get("href") or enclosure.get("url"))

    for link in entry.get("links", []) or []:
        if link.get("rel") == "enclosure" and (link.get("type") or "").startswith("image"):
            candidates.append(link.get("href"))

    image = entry.get("image")
    if isinstance(image, dict):
        candidates.append(image.get("href") or image.get("url"))

    html_blobs = [entry.get("summary") or ""]
    html_blobs.extend(c.get("value") or "" for c in entry.get("content", []) or [])
    for blob in html_blobs:
        match = IMG_SRC_PATTERN.search(blob)
        if match:
            candidates.append(match.group(1))

    for candidate in candidates:
        if candidate and is_image_url(candidate.strip()):
            return candidate.strip()
    return None


def parse_entry(entry, source_name: str, now: Optional[datetime] = None) -> Optional[Article]:
    title = strip_html(entry.get("title") or "")
    link = extract_link(entry)
    published_at = extract_published_at(entry, now)

    if not title or not link or published_at is None:
        return None

    return Article(
        title=title,
        link=link,
        published_at=published_at,
        source_name=source_name,
        description=extract_description(entry),
        image_url=extract_image_url(entry),
        guid=entry.get("id") or link,
    )


def parse_feed_entries(entries: Iterable, source_name: str, now: Optional[datetime] = None) -> List[Article]:
    """Turn feed entries into valid, non-excluded articles."""
    articles = []
    dropped = 0

    for entry in entries:
        try:
            article = parse_entry(entry, source_name, now)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("feed_entry_parse_failed", source=source_name, error=str(e))
            dropped += 1
            continue

        if article is None or not is_valid_article(article):
            dropped += 1
            continue
        articles.append(article)

    if dropped:
        logger.debug("feed_entries_dropped", source=source_name, dropped=dropped)
    return articles


def parse_feed_document(content: bytes, source_name: str, now: Optional[datetime] = None):
    """Returns (parsed feed, articles)."""
    feed = feedparser.parse(content)
    return feed, parse_feed_entries(feed.entries, source_name, now)


CATEGORY_KEYWORDS = {
    'Politics': ['government', 'president', 'parliament', 'election', 'political', 'minister', 'policy', 'law', 'court', 'ruto', 'odinga'],
    'Business': ['business', 'economy', 'economic', 'market', 'trade', 'investment', 'company', 'financial', 'bank', 'money', 'shilling'],
    'Technology': ['technology', 'tech', 'digital', 'internet', 'mobile', 'app', 'software', 'innovation', 'startup', 'safaricom'],
    'Sports': ['sports', 'football', 'soccer', 'rugby', 'athletics', 'olympics', 'match', 'team', 'player', 'harambee'],
    'Entertainment': ['entertainment', 'music', 'movie', 'film', 'celebrity', 'artist', 'culture', 'festival'],
}
DEFAULT_CATEGORY = 'Latest News'


def categorize_article(title: str, content: str = "") -> str:
    """Keyword categorization; first matching category wins"""
    text = (title + " " + (content or "")).lower()

    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(word in text for word in keywords):
            return category
    return DEFAULT_CATEGORY
