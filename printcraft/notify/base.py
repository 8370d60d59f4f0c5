"""
Job event fan-out.

Events are published to named channels: one per job (`job:<id>`) and one
per owner (`owner:<id>`). Delivery is best-effort; the Job Store stays the
source of truth and clients recover missed events by re-reading it.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional, AsyncIterator, Tuple

from pydantic import BaseModel, Field

from printcraft.jobs.models import Job, JobStatus
from printcraft.utils.logging import notify_logger as logger


def job_channel(job_id: str) -> str:
    return f"job:{job_id}"


def owner_channel(owner_id: str) -> str:
    return f"owner:{owner_id}"


class JobEvent(BaseModel):
    """Payload pushed to subscribers on every job transition."""
    job_id: str
    owner_id: str
    status: JobStatus
    progress: Optional[int] = None
    result: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_job(cls, job: Job) -> "JobEvent":
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            status=job.status,
            progress=job.progress,
            result=job.result,
            error=job.error if job.status == JobStatus.FAILED else None,
            error_kind=job.error_kind.value if job.error_kind and job.status == JobStatus.FAILED else None,
        )


class Subscription(ABC):
    """A per-connection stream of events from one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.closed = False

    @abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        """Next event, or None if `timeout` elapsed first."""
        ...

    @abstractmethod
    async def close(self):
        ...

    async def __aiter__(self) -> AsyncIterator[JobEvent]:
        while not self.closed:
            event = await self.get()
            if event is not None:
                yield event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class Notifier(ABC):
    """Channel-keyed publish/subscribe."""

    @abstractmethod
    async def publish(self, channel: str, event: JobEvent):
        ...

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        ...

    async def close(self):
        pass


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.LEASED: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.SUCCEEDED: 3,
    JobStatus.FAILED: 3,
    JobStatus.CANCELLED: 3,
}


class JobEventPublisher:
    """
    Publishes job snapshots to the job and owner channels.

    Keeps each job's events monotonic within this process: progress never
    goes backwards, nothing follows a terminal event, and a terminal event
    is sent once.
    """

    def __init__(self, notifier: Notifier, max_tracked: int = 10000):
        self.notifier = notifier
        self.max_tracked = max_tracked
        self._last: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()

    def _admit(self, event: JobEvent) -> bool:
        rank = _STATUS_RANK[event.status]
        progress = event.progress or 0
        previous = self._last.get(event.job_id)

        if previous is not None:
            prev_rank, prev_progress = previous
            if prev_rank == 3:
                return False
            if rank < prev_rank:
                return False
            if rank == prev_rank and progress <= prev_progress:
                return False

        self._last[event.job_id] = (rank, progress)
        self._last.move_to_end(event.job_id)
        while len(self._last) > self.max_tracked:
            self._last.popitem(last=False)
        return True

    async def publish_job(self, job: Job) -> bool:
        """Fan a job snapshot out to its channels. Returns False if suppressed."""
        event = JobEvent.from_job(job)
        if not self._admit(event):
            return False

        try:
            await self.notifier.publish(job_channel(job.id), event)
            await self.notifier.publish(owner_channel(job.owner_id), event)
        except Exception as e:
            # Best effort: subscribers recover by re-reading the Job Store
            logger.warning("Event publish failed", job_id=job.id, status=job.status.value, error=str(e))
            return False
        return True
