#!/usr/bin/env python3
"""
Standalone generation worker process.

Run this as a separate process from the web server so long generations
never hold up request handling. Use NOTIFIER_BACKEND=redis so events reach
clients connected to the web process.

Usage:
    python -m printcraft.jobs.run_worker
"""

import asyncio
import signal

from printcraft.config import config
from printcraft.pipeline import Pipeline
from printcraft.utils.logging import configure_logging, worker_logger as logger


async def main():
    """Run the worker pool as a standalone process."""
    configure_logging(config.LOG_LEVEL)

    logger.info(
        "Starting standalone generation worker",
        db_path=config.job_db_path,
        concurrency_limit=config.CONCURRENCY_LIMIT,
        provider=config.PROVIDER_BACKEND,
        notifier=config.NOTIFIER_BACKEND
    )
    if config.NOTIFIER_BACKEND == "memory":
        logger.warning("In-memory notifier: events will not reach the web process")

    pipeline = Pipeline.from_config(config)

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum):
        logger.info("Received signal, shutting down", signal=signum)
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown, signum)

    try:
        await pipeline.start(run_workers=True)
        logger.info("Worker running. Press Ctrl+C to stop.")

        # Keep running until shutdown signal
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down worker...")
        await pipeline.stop()
        logger.info("Worker stopped.")


if __name__ == "__main__":
    asyncio.run(main())
