"""CLI entry point: one ingestion run for an external cron, or the API server."""

import argparse
import asyncio
import json
import sys

import structlog

from .api.dependencies import build_services
from .config import get_settings
from .core.database import create_tables
from .core.logging import configure_logging
from .exceptions import IngestError, RunInProgressError

logger = structlog.get_logger(__name__)


async def run_once(trigger: str) -> int:
    settings = get_settings()
    services = build_services(settings)
    try:
        if services.engine is not None:
            create_tables(services.engine)
        run = await services.pipeline.run(trigger=trigger)
    except RunInProgressError as e:
        logger.warning("run_once_skipped", reason=e.message)
        return 2
    except IngestError as e:
        logger.error("run_once_failed", category=e.category.value, error=e.message)
        return 1
    finally:
        await services.aclose()

    print(json.dumps(run.model_dump(mode="json", exclude={"errors"}), indent=2))
    return 0


def serve() -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pulse_ingest.main:create_application",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        access_log=False,
    )
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pulse-ingest")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run-once", help="Execute a single ingestion run and exit")
    run_parser.add_argument("--trigger", default="cron", help="Label recorded on the run")
    subparsers.add_parser("serve", help="Start the HTTP control surface with the scheduler")

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    if args.command == "run-once":
        return asyncio.run(run_once(args.trigger))
    return serve()


if __name__ == "__main__":
    sys.exit(main())
