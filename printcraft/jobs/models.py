"""
Domain types for generation jobs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any


class JobStatus(str, Enum):
    """Status values for generation jobs, in lifecycle order"""
    PENDING = "pending"
    LEASED = "leased"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})


class ErrorKind(str, Enum):
    """Programmatic classification of a job failure"""
    TRANSIENT_PROVIDER = "transient_provider"
    PERMANENT_PROVIDER = "permanent_provider"
    PROVIDER_PARTIAL = "provider_partial"
    STORAGE = "storage"
    TIMEOUT = "timeout"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass
class Job:
    """A single request to produce one artifact, tracked end-to-end."""
    id: str
    owner_id: str
    request: Dict[str, Any]
    status: JobStatus
    max_attempts: int
    attempts: int = 0
    provider_ref: Optional[str] = None
    progress: int = 0
    result: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cancel_requested: bool = False
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[str] = None
    created_at: Optional[str] = None
    leased_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_public(self) -> Dict[str, Any]:
        """Projection returned to callers; lease bookkeeping stays internal."""
        return {
            "job_id": self.id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "leased_at": self.leased_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class Outcome:
    """Final result written by finalize()."""
    status: JobStatus
    result: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def __post_init__(self):
        if not self.status.is_terminal:
            raise ValueError(f"Outcome status must be terminal, got {self.status.value}")
        if (self.status == JobStatus.SUCCEEDED) != (self.result is not None):
            raise ValueError("result is set if and only if the outcome is succeeded")

    @classmethod
    def succeeded(cls, result: str) -> "Outcome":
        return cls(JobStatus.SUCCEEDED, result=result)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind) -> "Outcome":
        return cls(JobStatus.FAILED, error=error, error_kind=kind)

    @classmethod
    def cancelled(cls) -> "Outcome":
        return cls(JobStatus.CANCELLED)


@dataclass
class QueueEntry:
    """A row of the work queue."""
    job_id: str
    not_before: str
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[str] = None
    dead_lettered: bool = False
    dead_letter_reason: Optional[str] = None
    enqueued_at: Optional[str] = None
