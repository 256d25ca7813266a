from .article import Article, ProcessedArticle, ScrapedContent
from .errors import FetchError
from .kv_entry import KVEntry
from .monitoring import HealthReport, ProcessingRun
from .usage import DailyUsageCounter

__all__ = ["Article", "ProcessedArticle", "ScrapedContent", "FetchError", "KVEntry", "HealthReport", "ProcessingRun", "DailyUsageCounter"]
