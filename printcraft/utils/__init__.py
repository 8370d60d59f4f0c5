"""Utility modules for the generation pipeline."""

from printcraft.utils.logging import (
    get_logger,
    get_log_buffer,
    configure_logging,
    LogLevel,
    LogEntry,
    AppLogger,
    job_logger,
    worker_logger,
    provider_logger,
    storage_logger,
    notify_logger,
    api_logger,
)

__all__ = [
    "get_logger",
    "get_log_buffer",
    "configure_logging",
    "LogLevel",
    "LogEntry",
    "AppLogger",
    "job_logger",
    "worker_logger",
    "provider_logger",
    "storage_logger",
    "notify_logger",
    "api_logger",
]
