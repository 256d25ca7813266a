from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.dependencies import Services, build_services
from .api.router import api_router
from .config import Settings, get_settings
from .core.database import create_tables
from .core.logging import apply_logging_preferences, configure_logging
from .pipeline.scheduler import IngestScheduler
from .storage.sql_kv_store import SqlKeyValueStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings: Settings = app.state.settings
    apply_logging_preferences()
    logger.info("Starting Pulse ingestion API", version="0.1.0")

    services: Services = app.state.services or build_services(settings)
    app.state.services = services

    if services.engine is not None:
        try:
            create_tables(services.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error("Failed to initialize database", error=str(e))
            raise
    if isinstance(services.kv, SqlKeyValueStore):
        services.kv.purge_expired()

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = IngestScheduler(services.pipeline, settings.schedule_interval_minutes)
        scheduler.start()
    else:
        logger.info("scheduler_disabled")

    yield

    logger.info("Shutting down Pulse ingestion API")
    if scheduler is not None:
        scheduler.shutdown()
    await services.aclose()


def create_application(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Pulse News Ingestion",
        description="Scheduled Kenyan news ingestion pipeline with an operational control surface",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def handle_common_requests(request: Request, call_next):
        common_paths = ["/favicon.ico", "/robots.txt"]
        if request.url.path in common_paths:
            return JSONResponse(status_code=404, content={"detail": "Not found"})

        response = await call_next(request)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(
            "Unhandled exception occurred",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            }
        )

    app.include_router(api_router)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pulse_ingest.main:create_application",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info",
        access_log=False,
    )
