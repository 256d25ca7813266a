from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...exceptions import IngestError
from ..dependencies import Services, get_services

logger = structlog.get_logger(__name__)

router = APIRouter()


def error_response(error: Exception, status_code: int = 500) -> JSONResponse:
    message = error.message if isinstance(error, IngestError) else str(error)
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "error": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


@router.get("/status")
async def get_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness plus article counts, the watermark and the last run"""
    try:
        store_stats: Dict[str, Any]
        try:
            store_stats = await services.store.stats()
        except IngestError as e:
            logger.warning("store_stats_unavailable", category=e.category.value, error=e.message)
            store_stats = {"error": e.message}

        watermark = await services.watermark.read()
        last_run = await services.recorder.last_run()
        processing = await services.recorder.processing_stats()

        return {
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_in_progress": services.pipeline.running,
            "sources": len(services.registry),
            "fallback_enabled": services.fallback.enabled,
            "database": store_stats,
            "last_processed_timestamp": watermark.isoformat(),
            "last_run": last_run.model_dump(mode="json", exclude={"errors"}) if last_run else None,
            "processing": processing,
        }
    except Exception as e:
        logger.error("status_endpoint_failed", error=str(e))
        return error_response(e)


@router.get("/health")
async def get_health(services: Services = Depends(get_services)):
    try:
        report = await services.health.health()
        return report.model_dump(mode="json")
    except Exception as e:
        logger.error("health_endpoint_failed", error=str(e))
        return error_response(e)


@router.get("/dashboard")
async def get_dashboard(services: Services = Depends(get_services)):
    """Health report, error analysis and recent activity for the last 24 hours"""
    try:
        return await services.health.dashboard()
    except Exception as e:
        logger.error("dashboard_endpoint_failed", error=str(e))
        return error_response(e)
