"""
Timer-driven ingestion runs inside the API process.

One interval job; APScheduler never starts a second instance while one is
running and collapses missed firings into a single run.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..exceptions import IngestError, RunInProgressError
from .orchestrator import PipelineOrchestrator

logger = structlog.get_logger(__name__)

JOB_ID = "scheduled_ingestion"


async def scheduled_run(pipeline: PipelineOrchestrator) -> None:
    try:
        run = await pipeline.run(trigger="scheduled")
    except RunInProgressError as e:
        logger.info("scheduled_run_skipped", reason=e.message)
        return
    except IngestError as e:
        logger.error("scheduled_run_failed", category=e.category.value, error=e.message)
        return

    logger.info(
        "scheduled_run_finished",
        run_id=run.id,
        success_count=run.success_count,
        error_count=run.error_count,
    )


class IngestScheduler:

    def __init__(self, pipeline: PipelineOrchestrator, interval_minutes: int = 15):
        self.pipeline = pipeline
        self.interval_minutes = interval_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> AsyncIOScheduler:
        if self._scheduler is not None:
            return self._scheduler

        scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            }
        )
        scheduler.add_job(
            scheduled_run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            args=[self.pipeline],
            id=JOB_ID,
            name=f"Kenyan news ingestion (every {self.interval_minutes} min)",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        for job in scheduler.get_jobs():
            logger.info("scheduler_job_registered", job_id=job.id, next_run=str(job.next_run_time))
        return scheduler

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_stopped")
