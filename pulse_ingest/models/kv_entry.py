from sqlalchemy import Column, String, Text, DateTime, Float
from sqlalchemy.sql import func

from ..core.database import Base


class KVEntry(Base):
    """
    One key of the pipeline's state store.
    Rows past expires_at are treated as absent and purged lazily.
    """
    __tablename__ = "kv_entries"

    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(Float, nullable=True, index=True)  # epoch seconds

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
