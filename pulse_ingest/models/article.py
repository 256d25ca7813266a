"""
Article records that flow through a single ingestion run.
Nothing here is persisted by the pipeline itself.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any


@dataclass
class Article:
    """Candidate article as parsed from a feed or the fallback API"""
    title: str
    link: str
    published_at: datetime
    source_name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    guid: Optional[str] = None
    category: Optional[str] = None

    def __post_init__(self):
        if not self.guid:
            self.guid = self.link

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat()
        return data


@dataclass
class ScrapedContent:
    """Body text returned by the content scraper"""
    title: str
    content: str
    image_url: Optional[str] = None


@dataclass
class ProcessedArticle:
    """Enriched article handed to the persistence service"""
    title: str
    slug: str
    content: str
    summary: str
    category: str
    source_url: str
    image_url: str
    published_at: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
