"""
Write-once processing run records and the bookkeeping around them.

Layout in the KV store:
  processing_run_<id>      one ProcessingRun, expires after the retention window
  recent_processing_runs   newest-first list of run ids, trimmed to a fixed length
  processing_stats         running totals plus the last 20 error messages
  error_report_<ms>        error list of a run that failed outright or had errors
"""

import time
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from ..models.errors import FetchError
from ..models.monitoring import ProcessingRun
from ..storage.kv_store import (
    ERROR_REPORT_PREFIX,
    KeyValueStore,
    PROCESSING_STATS_KEY,
    RECENT_RUNS_KEY,
    RUN_KEY_PREFIX,
)

logger = structlog.get_logger(__name__)

STATS_ERROR_LIMIT = 20
REPORT_ERROR_LIMIT = 50


class RunRecorder:

    def __init__(
        self,
        kv: KeyValueStore,
        retention_seconds: int = 7 * 24 * 60 * 60,
        index_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.retention_seconds = retention_seconds
        self.index_size = index_size
        self._clock = clock

    def new_run_id(self) -> str:
        return f"run_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}"

    async def record_run(self, run: ProcessingRun) -> None:
        """
        Persist a finished run. Failures propagate as KeyValueStoreError;
        the caller treats them as fatal for the run.
        """
        await self.kv.put(
            f"{RUN_KEY_PREFIX}{run.id}",
            run.model_dump_json(),
            ttl_seconds=self.retention_seconds,
        )

        run_ids = await self.kv.get_json(RECENT_RUNS_KEY, default=[])
        run_ids = [run.id] + [r for r in run_ids if r != run.id]
        await self.kv.put_json(RECENT_RUNS_KEY, run_ids[:self.index_size], ttl_seconds=self.retention_seconds)

        await self._update_processing_stats(run)

        logger.info(
            "processing_run_recorded",
            run_id=run.id,
            trigger=run.trigger,
            articles_processed=run.articles_processed,
            success_count=run.success_count,
            error_count=run.error_count,
            duration_ms=run.duration_ms,
        )

    async def _update_processing_stats(self, run: ProcessingRun) -> None:
        stats = await self.processing_stats()
        recent_errors = [e.message for e in run.errors] + stats.get("errors", [])

        attempted = run.attempted_count
        stats.update({
            "total_processed": stats.get("total_processed", 0) + run.success_count,
            "last_run": run.timestamp.isoformat(),
            "last_run_id": run.id,
            "success_rate": run.success_count / attempted if attempted else None,
            "errors": recent_errors[:STATS_ERROR_LIMIT],
        })
        await self.kv.put_json(PROCESSING_STATS_KEY, stats)

    async def processing_stats(self) -> Dict[str, Any]:
        return await self.kv.get_json(PROCESSING_STATS_KEY, default=None) or {
            "total_processed": 0,
            "last_run": None,
            "success_rate": None,
            "errors": [],
        }

    async def get_run(self, run_id: str) -> Optional[ProcessingRun]:
        raw = await self.kv.get(f"{RUN_KEY_PREFIX}{run_id}")
        if raw is None:
            return None
        try:
            return ProcessingRun.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("processing_run_unreadable", run_id=run_id, error=str(e))
            return None

    async def recent_runs(self, hours: int = 24) -> List[ProcessingRun]:
        """Runs newer than `hours`, newest first. Expired ids are skipped."""
        cutoff = datetime.fromtimestamp(self._clock(), tz=timezone.utc) - timedelta(hours=hours)
        runs = []
        for run_id in await self.kv.get_json(RECENT_RUNS_KEY, default=[]):
            run = await self.get_run(run_id)
            if run is not None and run.timestamp > cutoff:
                runs.append(run)
        return sorted(runs, key=lambda r: r.timestamp, reverse=True)

    async def last_run(self) -> Optional[ProcessingRun]:
        run_ids = await self.kv.get_json(RECENT_RUNS_KEY, default=[])
        return await self.get_run(run_ids[0]) if run_ids else None

    async def store_error_report(self, errors: List[FetchError], context: Optional[Dict[str, Any]] = None) -> str:
        now = self._clock()
        key = f"{ERROR_REPORT_PREFIX}{int(now * 1000)}"
        report = {
            "timestamp": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            "total_errors": len(errors),
            "errors": [e.model_dump(mode="json") for e in errors[:REPORT_ERROR_LIMIT]],
            "summary": dict(Counter(e.category.value for e in errors)),
            "context": context or {},
        }
        await self.kv.put_json(key, report, ttl_seconds=self.retention_seconds)
        logger.info("error_report_stored", key=key, total_errors=len(errors))
        return key
