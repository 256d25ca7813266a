from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from ..exceptions import ErrorCategory


class FetchError(BaseModel):
    """Recorded failure of a source, query or article within a run"""
    source_id: str
    message: str
    category: ErrorCategory = ErrorCategory.SOURCE_FETCH
    http_status: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt_number: int = 0
    url: Optional[str] = None
