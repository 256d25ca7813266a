from typing import Optional
from urllib.parse import urljoin

import httpx
import structlog
from bs4 import BeautifulSoup

from ..exceptions import ContentExtractionError
from ..models.article import ScrapedContent
from ..utils.string_utils import clean_text, truncate_text
from .base import ContentScraper

logger = structlog.get_logger(__name__)

CONTENT_SELECTORS = [
    "article",
    "[role=main]",
    ".post-content",
    ".entry-content",
    ".article-content",
    ".article-body",
    ".story-content",
    "main",
]

NOISE_TAGS = ["script", "style", "noscript", "nav", "aside", "footer", "header", "form", "iframe"]

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class HtmlContentProcessor:
    MAX_CONTENT_LENGTH = 20000

    def _meta(self, soup: BeautifulSoup, name: str) -> Optional[str]:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content"):
            return tag["content"].strip()
        return None

    def extract_title(self, soup: BeautifulSoup) -> str:
        title = self._meta(soup, "og:title")
        if title:
            return clean_text(title)
        for tag_name in ("h1", "title"):
            tag = soup.find(tag_name)
            if tag and tag.get_text(strip=True):
                return clean_text(tag.get_text(" "))
        return ""

    def extract_body(self, soup: BeautifulSoup) -> str:
        for tag in soup(NOISE_TAGS):
            tag.decompose()

        for selector in CONTENT_SELECTORS:
            container = soup.select_one(selector)
            if container is None:
                continue
            paragraphs = [clean_text(p.get_text(" ")) for p in container.find_all("p")]
            text = "\n\n".join(p for p in paragraphs if p)
            if not text:
                text = clean_text(container.get_text(" "))
            if text:
                return text

        paragraphs = [clean_text(p.get_text(" ")) for p in soup.find_all("p")]
        return "\n\n".join(p for p in paragraphs if p)

    def extract_image(self, soup: BeautifulSoup, page_url: str) -> Optional[str]:
        image = self._meta(soup, "og:image") or self._meta(soup, "twitter:image")
        if image:
            return urljoin(page_url, image)

        for img in soup.find_all("img"):
            src = img.get("src") or img.get("data-src")
            if src and not any(word in src for word in ("logo", "icon", "avatar")):
                return urljoin(page_url, src)
        return None

    def process(self, html: str, page_url: str) -> ScrapedContent:
        soup = BeautifulSoup(html, "html.parser")
        title = self.extract_title(soup)
        image_url = self.extract_image(soup, page_url)
        content = truncate_text(self.extract_body(soup), self.MAX_CONTENT_LENGTH)
        return ScrapedContent(title=title, content=content, image_url=image_url)


class HttpContentScraper(ContentScraper):
    """
    Fetches an article page and reduces it to readable body text.
    Goes through the scraping proxy when a key is configured.
    """

    SCRAPER_API_URL = "http://api.scraperapi.com"

    def __init__(
        self,
        client: httpx.AsyncClient,
        min_content_length: int = 200,
        scraper_api_key: Optional[str] = None,
    ):
        self.client = client
        self.min_content_length = min_content_length
        self.scraper_api_key = scraper_api_key
        self.processor = HtmlContentProcessor()

    async def _get(self, url: str) -> httpx.Response:
        if self.scraper_api_key:
            params = {"api_key": self.scraper_api_key, "url": url, "render": "false", "country_code": "KE"}
            return await self.client.get(self.SCRAPER_API_URL, params=params, headers=BROWSER_HEADERS)
        return await self.client.get(url, headers=BROWSER_HEADERS, follow_redirects=True)

    async def fetch_body(self, url: str) -> ScrapedContent:
        logger.info("content_scrape_started", url=url)

        try:
            response = await self._get(url)
        except httpx.TimeoutException as e:
            raise ContentExtractionError("Scrape request timed out", url=url) from e
        except httpx.HTTPError as e:
            raise ContentExtractionError(f"Scrape request failed: {e}", url=url) from e

        if response.status_code >= 400:
            raise ContentExtractionError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                http_status=response.status_code,
                url=url,
            )

        scraped = self.processor.process(response.text, url)
        if len(scraped.content) < self.min_content_length:
            raise ContentExtractionError(
                f"Extracted content too short ({len(scraped.content)} < {self.min_content_length} chars)",
                url=url,
                details={"content_length": len(scraped.content)},
            )

        logger.info("content_scrape_completed", url=url, content_length=len(scraped.content))
        return scraped
