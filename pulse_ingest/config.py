from functools import lru_cache
from typing import Annotated, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

DEFAULT_FEED_URLS = [
    "https://ntvkenya.co.ke/feed",
    "https://www.capitalfm.co.ke/news/rss/",
    "https://www.citizen.digital/rss",
    "https://www.pulselive.co.ke/rss",
    "https://www.ghafla.com/ke/feed/",
]

DEFAULT_FALLBACK_QUERIES = [
    'Kenya OR Nairobi OR "East Africa"',
    "Kenya politics OR government OR election",
    "Kenya business OR economy OR investment",
]


class Settings(BaseSettings):

    api_host: str = Field(default="localhost", description="API host")
    api_port: int = Field(default=8000, description="API port")
    debug: bool = Field(default=False, description="Debug mode")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        description="Allowed CORS origins",
        validation_alias=AliasChoices("CORS_ALLOWED_ORIGINS", "ALLOWED_ORIGINS"),
    )

    # Key-value state store
    kv_backend: str = Field(default="sql", description="KV backend: sql or memory")
    database_url: str = Field(
        default="sqlite:///./pulse_ingest.db",
        description="Database URL for the SQL key-value backend",
        examples=["sqlite:///./pulse_ingest.db"]
    )

    # Persistence service (articles table behind a REST API)
    store_url: Optional[str] = Field(
        default=None,
        description="Persistence service base URL",
        validation_alias=AliasChoices("SUPABASE_URL", "STORE_URL"),
    )
    store_key: Optional[str] = Field(
        default=None,
        description="Persistence service credential",
        validation_alias=AliasChoices("SUPABASE_SERVICE_KEY", "STORE_KEY"),
    )
    store_timeout_seconds: float = Field(default=10.0, description="Persistence request timeout")

    # Enrichment (AI rewrite)
    enrichment_api_key: Optional[str] = Field(
        default=None,
        description="Enrichment service API key",
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "ENRICHMENT_API_KEY"),
    )
    enrichment_base_url: str = Field(default="https://openrouter.ai/api/v1", description="Enrichment API base URL")
    enrichment_models: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["z-ai/glm-4.5-air:free", "google/gemma-3-27b-it:free"],
        description="Models tried in order for enrichment"
    )
    enrichment_timeout_seconds: float = Field(default=60.0, description="Enrichment request timeout")

    # Content scraping
    scraper_api_key: Optional[str] = Field(default=None, description="Optional scraping proxy API key")
    scraper_timeout_seconds: float = Field(default=20.0, description="Scrape request timeout")
    min_content_length: int = Field(default=200, description="Minimum scraped body length in characters")

    # Primary feeds
    feed_urls: Annotated[list[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_FEED_URLS), description="RSS/Atom feed URLs")
    feed_timeout_seconds: float = Field(default=15.0, description="Feed request timeout")

    # Fallback search API (GNews)
    fallback_api_key: Optional[str] = Field(
        default=None,
        description="Fallback search API key; absence disables the fallback path",
        validation_alias=AliasChoices("NEWS_API_KEY", "GNEWS_API_KEY", "FALLBACK_API_KEY"),
    )
    fallback_base_url: str = Field(default="https://gnews.io/api/v4", description="Fallback API base URL")
    fallback_daily_limit: int = Field(default=20, description="Internal daily ceiling for fallback calls")
    fallback_provider_limit: int = Field(default=100, description="Provider hard daily limit")
    fallback_min_interval_seconds: float = Field(default=1.0, description="Minimum spacing between fallback calls")
    fallback_articles_per_request: int = Field(default=10, description="Articles requested per fallback call")
    fallback_max_queries_per_run: int = Field(default=2, description="Maximum fallback queries per invocation")
    fallback_max_articles: int = Field(default=25, description="Maximum fallback articles per run")
    fallback_query_cache_ttl_hours: int = Field(default=6, description="Fallback query cache validity")
    fallback_queries: Annotated[list[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_QUERIES), description="Fallback search queries")
    fallback_country: str = Field(default="ke", description="Fallback country filter")
    fallback_language: str = Field(default="en", description="Fallback language filter")

    # Pipeline
    min_primary_articles: int = Field(default=5, description="Primary article count below which the fallback is consulted")
    default_lookback_hours: int = Field(default=24, description="Watermark default when none is stored")
    run_deadline_seconds: float = Field(default=600.0, description="Per-run deadline")

    # Deduplication
    identity_cache_max_size: int = Field(default=2000, description="Maximum retained titles/URLs per identity set")
    identity_cache_ttl_days: int = Field(default=7, description="Identity cache expiry in days")
    similarity_threshold: float = Field(default=0.85, description="Near-duplicate title threshold")

    # Monitoring
    run_retention_days: int = Field(default=7, description="Processing run retention in days")
    recent_runs_index_size: int = Field(default=100, description="Length of the recent run index")
    health_probe_sample_size: int = Field(default=3, description="Feeds probed by the health check")
    health_probe_timeout_seconds: float = Field(default=10.0, description="Health probe timeout")

    # Scheduling
    scheduler_enabled: bool = Field(default=True, description="Run the pipeline on a timer inside the API process")
    schedule_interval_minutes: int = Field(default=15, description="Scheduled run interval in minutes")

    @field_validator("allowed_origins", "feed_urls", "fallback_queries", "enrichment_models", mode="before")
    @classmethod
    def parse_comma_separated(cls, value):
        if value is None:
            return value
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    class Config:
        env_file = [".env", ".env.local"]  # .env.local takes precedence over .env
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
