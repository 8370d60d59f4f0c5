#!/usr/bin/env python3
"""
Process entry point.

SERVICE_TYPE picks the process:
  - web (default): the FastAPI app under gunicorn with uvicorn workers
  - worker: the standalone generation worker pool
"""

import os
import sys
from typing import Dict, List

from printcraft.utils.logging import configure_logging, get_logger

logger = get_logger("start")


def build_command(service_type: str, env: Dict[str, str]) -> List[str]:
    if service_type == "web":
        # More than one web worker needs NOTIFIER_BACKEND=redis for event streams
        return [
            "gunicorn", "printcraft.api.main:app",
            "--workers", env.get("WEB_CONCURRENCY", "1"),
            "--worker-class", "uvicorn.workers.UvicornWorker",
            "--bind", f"0.0.0.0:{env.get('PORT', '8000')}",
            "--graceful-timeout", "30",
        ]
    if service_type == "worker":
        return [sys.executable, "-m", "printcraft.jobs.run_worker"]
    raise ValueError(f"Unknown SERVICE_TYPE {service_type!r} (expected web or worker)")


def main():
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    service_type = os.environ.get("SERVICE_TYPE", "web")

    try:
        cmd = build_command(service_type, dict(os.environ))
    except ValueError as e:
        logger.critical(str(e))
        sys.exit(1)

    logger.info("Starting service", service_type=service_type, command=" ".join(cmd))
    os.execvp(cmd[0], cmd)


if __name__ == "__main__":
    main()
