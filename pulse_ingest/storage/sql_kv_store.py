import time
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..exceptions import KeyValueStoreError
from ..models.kv_entry import KVEntry
from .kv_store import KeyValueStore

logger = structlog.get_logger(__name__)


class SqlKeyValueStore(KeyValueStore):
    """Durable KV backend on a single SQLAlchemy table."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], float] = time.time):
        self.session_factory = session_factory
        self._clock = clock

    def _is_live(self, entry: KVEntry) -> bool:
        return entry.expires_at is None or entry.expires_at > self._clock()

    async def get(self, key: str) -> Optional[str]:
        db = self.session_factory()
        try:
            entry = db.query(KVEntry).filter(KVEntry.key == key).first()
            if entry is None:
                return None
            if not self._is_live(entry):
                db.delete(entry)
                db.commit()
                return None
            return entry.value
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("kv_get_failed", key=key, error=str(e))
            raise KeyValueStoreError(f"KV read failed for {key}: {e}") from e
        finally:
            db.close()

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        db = self.session_factory()
        try:
            entry = db.query(KVEntry).filter(KVEntry.key == key).first()
            if entry is None:
                db.add(KVEntry(key=key, value=value, expires_at=expires_at))
            else:
                entry.value = value
                entry.expires_at = expires_at
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("kv_put_failed", key=key, error=str(e))
            raise KeyValueStoreError(f"KV write failed for {key}: {e}") from e
        finally:
            db.close()

    async def delete(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(KVEntry).filter(KVEntry.key == key).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("kv_delete_failed", key=key, error=str(e))
            raise KeyValueStoreError(f"KV delete failed for {key}: {e}") from e
        finally:
            db.close()

    async def list_keys(self, prefix: str = "") -> List[str]:
        db = self.session_factory()
        try:
            now = self._clock()
            rows = (
                db.query(KVEntry.key)
                .filter(KVEntry.key.startswith(prefix, autoescape=True))
                .filter((KVEntry.expires_at.is_(None)) | (KVEntry.expires_at > now))
                .order_by(KVEntry.key)
                .all()
            )
            return [row.key for row in rows]
        except SQLAlchemyError as e:
            logger.error("kv_list_failed", prefix=prefix, error=str(e))
            raise KeyValueStoreError(f"KV list failed for prefix {prefix}: {e}") from e
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self.session_factory()
        try:
            removed = (
                db.query(KVEntry)
                .filter(KVEntry.expires_at.isnot(None), KVEntry.expires_at <= self._clock())
                .delete(synchronize_session=False)
            )
            db.commit()
            if removed:
                logger.info("kv_expired_purged", removed=removed)
            return removed
        finally:
            db.close()
