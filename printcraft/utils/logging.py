"""
Logging for the generation pipeline.

Every record goes to stdlib logging (as key=value pairs after the message)
and into an in-memory ring buffer that the admin endpoints read, so a job's
history can be traced by its id without external log aggregation.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Optional, List, Dict, Any


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def is_error(self) -> bool:
        return self in (LogLevel.ERROR, LogLevel.CRITICAL)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    source: str = "system"
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> Optional[str]:
        return self.context.get("job_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "job_id": self.job_id,
            "context": {k: _jsonable(v) for k, v in self.context.items() if k != "job_id"},
        }


class LogBuffer:
    """
    Bounded, thread-safe buffer of recent entries.

    Error and warning totals survive eviction from the buffer; they reset
    only on clear().
    """

    def __init__(self, max_size: int = 2000):
        self._entries: deque = deque(maxlen=max_size)
        self._lock = Lock()
        self._totals: Dict[str, int] = {}

    def add(self, entry: LogEntry):
        with self._lock:
            self._entries.append(entry)
            self._totals[entry.level.value] = self._totals.get(entry.level.value, 0) + 1

    def _snapshot(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def get_recent(
        self,
        limit: int = 100,
        level: Optional[LogLevel] = None,
        source: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest first, optionally filtered"""
        matches = [
            e for e in reversed(self._snapshot())
            if (level is None or e.level == level)
            and (source is None or e.source == source)
            and (job_id is None or e.job_id == job_id)
        ]
        return [e.to_dict() for e in matches[:limit]]

    def get_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        errors = [e for e in reversed(self._snapshot()) if e.level.is_error]
        return [e.to_dict() for e in errors[:limit]]

    def job_trace(self, job_id: str) -> List[Dict[str, Any]]:
        """Everything logged for one job, oldest first."""
        return [e.to_dict() for e in self._snapshot() if e.job_id == job_id]

    def get_stats(self) -> Dict[str, Any]:
        entries = self._snapshot()
        by_source: Dict[str, int] = {}
        failing_jobs = set()
        for entry in entries:
            by_source[entry.source] = by_source.get(entry.source, 0) + 1
            if entry.level.is_error and entry.job_id:
                failing_jobs.add(entry.job_id)

        with self._lock:
            totals = dict(self._totals)

        return {
            "total": len(entries),
            "by_source": by_source,
            "totals_by_level": totals,
            "error_count": totals.get("error", 0) + totals.get("critical", 0),
            "warning_count": totals.get("warning", 0),
            "jobs_with_errors": len(failing_jobs),
        }

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._totals.clear()


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


def _format_context(context: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in context.items())


class AppLogger:
    """
    Writes to stdlib logging and the shared buffer.

    Keyword arguments become structured context:
        logger.info("Job completed", job_id=job.id, duration_seconds=1.2)
    """

    def __init__(self, source: str, context: Optional[Dict[str, Any]] = None):
        self.source = source
        self.context = dict(context or {})
        self._logger = logging.getLogger(f"printcraft.{source}")

    def bind(self, **context) -> "AppLogger":
        """Child logger that adds `context` to every record."""
        return AppLogger(self.source, {**self.context, **context})

    def _log(self, level: LogLevel, message: str, context: Dict[str, Any]):
        merged = {**self.context, **context}
        _log_buffer.add(LogEntry(level, message, self.source, merged))

        if merged:
            message = f"{message} {_format_context(merged)}"
        self._logger.log(getattr(logging, level.name), message)

    def debug(self, message: str, **context):
        self._log(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context):
        self._log(LogLevel.INFO, message, context)

    def warning(self, message: str, **context):
        self._log(LogLevel.WARNING, message, context)

    def error(self, message: str, **context):
        self._log(LogLevel.ERROR, message, context)

    def critical(self, message: str, **context):
        self._log(LogLevel.CRITICAL, message, context)


def get_logger(source: str) -> AppLogger:
    return AppLogger(source)


def configure_logging(level: str = "INFO"):
    """Configure stdlib logging for process entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )


job_logger = AppLogger("jobs")
worker_logger = AppLogger("worker")
provider_logger = AppLogger("provider")
storage_logger = AppLogger("storage")
notify_logger = AppLogger("notify")
api_logger = AppLogger("api")
