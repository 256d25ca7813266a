import hashlib
import re

from bs4 import BeautifulSoup


def clean_text(text: str) -> str:
    return ' '.join(text.split())


def strip_html(text: str) -> str:
    """Reduce an HTML fragment to whitespace-normalised plain text."""
    if not text:
        return ""
    if '<' not in text and '&' not in text:
        return clean_text(text)
    return clean_text(BeautifulSoup(text, "html.parser").get_text(" "))


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def normalize_title(title: str) -> str:
    """Lowercase, drop everything but [a-z0-9] and whitespace, collapse whitespace."""
    lowered = (title or "").lower()
    return clean_text(re.sub(r'[^a-z0-9\s]', '', lowered))


def normalize_url(url: str) -> str:
    return (url or "").strip().lower()


def slugify(text: str, max_length: int = 80) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (text or "").lower()).strip('-')
    return slug[:max_length].rstrip('-')


def short_hash(value: str, length: int = 12) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]
