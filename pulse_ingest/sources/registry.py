"""
Feed source registry
Static source endpoints plus per-source fetch policy. Everything here is
immutable and handed to the fetch layer by the caller.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from ..utils.url_utils import source_id_for

USER_AGENTS: Tuple[str, ...] = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
)

HEADER_PROFILES: Mapping[str, Mapping[str, str]] = MappingProxyType({
    "rss": MappingProxyType({
        'Accept': 'application/rss+xml, application/xml, text/xml',
        'Accept-Language': 'en-US,en;q=0.9',
    }),
    "browser": MappingProxyType({
        'Accept': 'application/rss+xml, application/xml, text/xml, text/html, */*',
        'Accept-Language': 'en-US,en;q=0.9',
        'Cache-Control': 'no-cache',
        'Pragma': 'no-cache',
        'Sec-Fetch-Dest': 'document',
        'Sec-Fetch-Mode': 'navigate',
        'Sec-Fetch-Site': 'cross-site',
        'Upgrade-Insecure-Requests': '1',
    }),
})


@dataclass(frozen=True)
class SourcePolicy:
    request_delay_seconds: float = 1.0
    max_retries: int = 2
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 3.0
    header_profile: str = "rss"

    @property
    def headers(self) -> Mapping[str, str]:
        return HEADER_PROFILES.get(self.header_profile, HEADER_PROFILES["rss"])

    def backoff_for(self, attempt: int) -> float:
        """Delay before the attempt after `attempt` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_cap_seconds)


DEFAULT_POLICY = SourcePolicy()

# Sources known to rate-limit harder get slower pacing and more patience
GUARDED_POLICY = SourcePolicy(
    request_delay_seconds=2.0,
    max_retries=3,
    backoff_cap_seconds=10.0,
    header_profile="browser",
)


@dataclass(frozen=True)
class FeedSource:
    source_id: str
    url: str
    name: str
    policy: SourcePolicy = field(default=DEFAULT_POLICY)


@dataclass(frozen=True)
class SourceRegistry:
    sources: Tuple[FeedSource, ...]

    def __len__(self) -> int:
        return len(self.sources)

    def __iter__(self):
        return iter(self.sources)

    def get(self, source_id: str) -> Optional[FeedSource]:
        for source in self.sources:
            if source.source_id == source_id:
                return source
        return None

    def policy_by_source_id(self) -> Mapping[str, SourcePolicy]:
        return MappingProxyType({s.source_id: s.policy for s in self.sources})

    def sample(self, size: int) -> Tuple[FeedSource, ...]:
        return self.sources[:max(0, size)]


def build_registry(
    feed_urls: Iterable[str],
    policy_overrides: Optional[Mapping[str, SourcePolicy]] = None,
) -> SourceRegistry:
    overrides = policy_overrides or {}
    sources = []
    seen = set()
    for url in feed_urls:
        source_id = source_id_for(url)
        if not source_id or source_id in seen:
            continue
        seen.add(source_id)
        sources.append(FeedSource(
            source_id=source_id,
            url=url,
            name=source_id,
            policy=overrides.get(source_id, DEFAULT_POLICY),
        ))
    return SourceRegistry(sources=tuple(sources))


DEFAULT_POLICY_OVERRIDES: Mapping[str, SourcePolicy] = MappingProxyType({
    "citizen.digital": GUARDED_POLICY,
    "pulselive.co.ke": GUARDED_POLICY,
})
