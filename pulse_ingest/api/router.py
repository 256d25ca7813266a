from fastapi import APIRouter

from .endpoints import ingestion, monitoring

ENDPOINTS = {
    "GET /": "Service description",
    "GET /status": "Liveness, article counts, watermark and last run",
    "GET /health": "Full health report with alerts",
    "GET /dashboard": "Health, error analysis and recent runs",
    "POST /trigger": "Start one ingestion run in the background",
    "GET /test-rss": "Dry run of the primary feed fetch",
    "GET /gnews-stats": "Today's fallback API usage",
}

api_router = APIRouter()


@api_router.get("/", tags=["service"])
async def root():
    return {
        "service": "Pulse News Ingestion",
        "description": "Scheduled Kenyan news ingestion with fallback search, deduplication and monitoring",
        "version": "0.1.0",
        "endpoints": ENDPOINTS,
    }


api_router.include_router(monitoring.router, tags=["monitoring"])
api_router.include_router(ingestion.router, tags=["ingestion"])
