from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCategory(str, Enum):
    SOURCE_FETCH = "SOURCE_FETCH"
    CONTENT_EXTRACTION = "CONTENT_EXTRACTION"
    ENRICHMENT = "ENRICHMENT"
    PERSISTENCE = "PERSISTENCE"
    VALIDATION = "VALIDATION"
    FALLBACK_API = "FALLBACK_API"
    PIPELINE = "PIPELINE"


class IngestError(Exception):
    category: ErrorCategory = ErrorCategory.PIPELINE

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        http_status: Optional[int] = None,
        attempt: int = 0,
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.source_id = source_id
        self.http_status = http_status
        self.attempt = attempt
        self.url = url
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "source_id": self.source_id,
            "http_status": self.http_status,
            "attempt": self.attempt,
            "url": self.url,
            "details": self.details,
        }

    def to_fetch_error(self):
        from .models.errors import FetchError

        return FetchError(
            source_id=self.source_id or "pipeline",
            message=self.message,
            category=self.category,
            http_status=self.http_status,
            timestamp=self.timestamp,
            attempt_number=self.attempt,
            url=self.url,
        )


class SourceFetchError(IngestError):
    category = ErrorCategory.SOURCE_FETCH


class FeedBlockedError(SourceFetchError):
    """An HTML page came back where a feed document was expected."""


class FeedParseError(SourceFetchError):
    pass


class ContentExtractionError(IngestError):
    category = ErrorCategory.CONTENT_EXTRACTION


class EnrichmentError(IngestError):
    category = ErrorCategory.ENRICHMENT


class PersistenceError(IngestError):
    category = ErrorCategory.PERSISTENCE


class ArticleValidationError(IngestError):
    category = ErrorCategory.VALIDATION


class FallbackApiError(IngestError):
    category = ErrorCategory.FALLBACK_API


class KeyValueStoreError(IngestError):
    category = ErrorCategory.PIPELINE


class RunInProgressError(IngestError):
    category = ErrorCategory.PIPELINE


class RunDeadlineExceeded(IngestError):
    category = ErrorCategory.PIPELINE
