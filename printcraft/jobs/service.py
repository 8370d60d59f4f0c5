"""
Generation service: the operations behind the ingress API.

Owns job creation, owner-scoped reads, cancellation and inbound provider
callbacks. Routes stay thin and call into this class.
"""

import uuid
from typing import Dict, Any, List, Tuple

from printcraft.config import PipelineSettings
from printcraft.jobs.database import JobStore, JobNotFoundError
from printcraft.jobs.finalizer import JobFinalizer
from printcraft.jobs.models import Job
from printcraft.jobs.queue import JobScheduler
from printcraft.notify.base import JobEventPublisher, Notifier, Subscription, job_channel, owner_channel
from printcraft.providers.base import ProviderClient, ProviderError, RateLimiter, RateLimitedError
from printcraft.utils.logging import job_logger as logger


class InvalidRequestError(ValueError):
    """The generation request is malformed."""


class CreationRateLimitedError(Exception):
    """The caller submitted too many jobs inside the rate window."""


class GenerationService:

    def __init__(
        self,
        store: JobStore,
        scheduler: JobScheduler,
        provider: ProviderClient,
        notifier: Notifier,
        publisher: JobEventPublisher,
        finalizer: JobFinalizer,
        settings: PipelineSettings
    ):
        self.store = store
        self.scheduler = scheduler
        self.provider = provider
        self.notifier = notifier
        self.publisher = publisher
        self.finalizer = finalizer
        self.settings = settings
        self._creation_limiters: Dict[str, RateLimiter] = {}

    async def create_job(self, owner_id: str, request: Dict[str, Any]) -> Job:
        """
        Record a new job and hand it to the scheduler.

        Returns as soon as the job is durable; generation happens later.
        """
        if not isinstance(request, dict) or not request:
            raise InvalidRequestError("Generation request must be a non-empty object")
        await self._check_creation_rate(owner_id)

        job = await self.store.create(request, owner_id, self.settings.max_attempts)
        await self.scheduler.enqueue(job.id)
        await self.publisher.publish_job(job)
        return job

    async def regenerate_job(self, owner_id: str, job_id: str) -> Job:
        """Submit a fresh job with the same request as one of the caller's jobs"""
        source = await self.get_job(owner_id, job_id)
        job = await self.create_job(owner_id, dict(source.request))
        logger.info("Generation regenerated", job_id=job.id, source_job_id=job_id, owner_id=owner_id)
        return job

    async def _check_creation_rate(self, owner_id: str):
        limiter = self._creation_limiters.get(owner_id)
        if limiter is None:
            # Drop limiters whose window has emptied
            for idle_owner in [o for o, l in self._creation_limiters.items() if l.idle]:
                del self._creation_limiters[idle_owner]
            limiter = RateLimiter(
                self.settings.creation_rate_limit,
                self.settings.creation_rate_period,
                max_wait=0.0
            )
            self._creation_limiters[owner_id] = limiter

        try:
            await limiter.acquire()
        except RateLimitedError as e:
            logger.warning("Creation rate limit hit", owner_id=owner_id, limit=self.settings.creation_rate_limit)
            raise CreationRateLimitedError(str(e)) from e

    async def get_job(self, owner_id: str, job_id: str) -> Job:
        """Owner-scoped read. Other owners' jobs look exactly like missing ones."""
        job = await self.store.get(job_id)
        if job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Job], int]:
        jobs = await self.store.list_for_owner(owner_id, limit=limit, offset=offset)
        total = await self.store.count_for_owner(owner_id)
        return jobs, total

    async def cancel_job(self, owner_id: str, job_id: str) -> Job:
        """
        Request cancellation.

        A job nobody is working on (queued, or waiting out a retry backoff)
        is cancelled right away; otherwise the worker holding it observes the
        flag within one poll interval. Cancelling a terminal job is a no-op.
        """
        job = await self.get_job(owner_id, job_id)
        if job.is_terminal:
            return job

        job = await self.store.request_cancel(job_id)
        logger.info("Cancellation requested", job_id=job_id, owner_id=owner_id, status=job.status.value)

        holder = f"cancel:{uuid.uuid4().hex[:8]}"
        if await self.store.try_lease(job_id, holder, self.settings.lease_duration):
            if job.provider_ref:
                try:
                    await self.provider.cancel(job.provider_ref)
                except ProviderError as e:
                    logger.warning("Provider cancel failed", job_id=job_id, error=str(e))
            await self.finalizer.cancel(job_id)

        return await self.store.get(job_id)

    async def handle_provider_callback(self, payload: Dict[str, Any]) -> str:
        """Map a provider callback body to its job and apply it"""
        provider_ref, status = self.provider.parse_callback(payload)
        result = await self.finalizer.handle_callback(provider_ref, status)
        logger.info("Provider callback handled", provider_ref=provider_ref, state=status.state.value, result=result)
        return result

    async def subscribe_job(self, owner_id: str, job_id: str) -> Tuple[Job, Subscription]:
        """
        Subscribe to one job's events.

        The current snapshot is returned alongside the subscription so a
        client that connects late still sees the latest state.
        """
        await self.get_job(owner_id, job_id)
        subscription = await self.notifier.subscribe(job_channel(job_id))
        job = await self.store.get(job_id)
        return job, subscription

    async def subscribe_owner(self, owner_id: str) -> Subscription:
        return await self.notifier.subscribe(owner_channel(owner_id))

    async def admin_overview(self) -> Dict[str, Any]:
        """Queue and job counters for the admin dashboard"""
        return {
            "queue": await self.scheduler.stats(),
            "jobs": await self.store.counts_by_status(),
        }
