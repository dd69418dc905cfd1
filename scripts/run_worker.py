#!/usr/bin/env python3
"""
Run the orchestrator worker until interrupted.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml --debug
"""
import argparse
import asyncio
import logging
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv


def _configure_logging(debug: bool) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
    )


async def run(config_path: str = None) -> None:
    from config.settings import load_settings
    from core.orchestrator import build_orchestrator
    from core.retrieval import HttpVectorSearchService
    from database.session import close_db, init_db
    from database.store_factory import create_store
    from workers.orchestrator_worker import OrchestratorWorker

    settings = load_settings(config_path)
    logger = structlog.get_logger()

    if settings.database.store_backend == "sql":
        await init_db()
    store = create_store(settings.database)
    search = HttpVectorSearchService(settings.vector_search)
    orchestrator = build_orchestrator(settings, store, search=search)
    worker = OrchestratorWorker(orchestrator, store, settings.worker)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await worker.start()
    logger.info("worker_running", app=settings.app_name,
                backend=settings.database.store_backend)
    try:
        await stop.wait()
    finally:
        await worker.stop()
        await search.close()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("worker_shutdown_complete")


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Conversation orchestrator worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--debug", action="store_true", help="Console logs at debug level")
    args = parser.parse_args()

    _configure_logging(args.debug)
    asyncio.run(run(args.config))


if __name__ == "__main__":
    main()
