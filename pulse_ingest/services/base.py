"""
Downstream collaborators of the pipeline.

The pipeline depends only on these interfaces; the concrete adapters in this
package talk to the scraping target, the enrichment model and the article
store.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..models.article import Article, ProcessedArticle, ScrapedContent


class ContentScraper(ABC):

    @abstractmethod
    async def fetch_body(self, url: str) -> ScrapedContent:
        pass


class Enricher(ABC):

    @abstractmethod
    async def enrich(self, article: Article, scraped: ScrapedContent) -> ProcessedArticle:
        pass


class ArticleStore(ABC):

    @abstractmethod
    async def exists(self, source_url: str) -> bool:
        pass

    @abstractmethod
    async def store(self, article: ProcessedArticle) -> None:
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Total articles, articles created today, last processed timestamp"""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Raise PersistenceError when the store is unreachable"""
        pass
