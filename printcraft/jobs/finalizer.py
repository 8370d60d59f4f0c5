"""
Single finalize path for generation jobs.

Reached from the worker's poll loop and from inbound provider callbacks.
Every entry checks the job's current state first and relies on the store's
conditional writes, so a completion observed twice (poll + callback, or a
crash-recovered retry) uploads at most once and notifies at most once.
"""

import uuid
from typing import Optional

from printcraft.config import PipelineSettings
from printcraft.jobs.database import JobStore
from printcraft.jobs.models import ErrorKind, Outcome
from printcraft.jobs.queue import JobScheduler
from printcraft.notify.base import JobEventPublisher
from printcraft.providers.base import Artifact, ProviderStatus, ProviderState
from printcraft.storage.base import StorageClient, StorageExhaustedError, artifact_key, store_with_retries
from printcraft.utils.logging import job_logger as logger


class CallbackResult:
    """How an inbound callback was handled"""
    FINALIZED = "finalized"
    NOOP = "noop"
    UNKNOWN = "unknown"
    DEFERRED = "deferred"
    PROGRESS = "progress"


class JobFinalizer:

    def __init__(
        self,
        store: JobStore,
        scheduler: JobScheduler,
        storage: StorageClient,
        publisher: JobEventPublisher,
        settings: PipelineSettings
    ):
        self.store = store
        self.scheduler = scheduler
        self.storage = storage
        self.publisher = publisher
        self.settings = settings

    @property
    def claim_ttl(self) -> float:
        budget_time = self.settings.storage_retry_budget * (self.settings.storage_retry_delay + 60.0)
        return max(self.settings.lease_duration, budget_time)

    async def _finalize(self, job_id: str, outcome: Outcome, dead_letter: bool = False) -> bool:
        finalized = await self.store.finalize(job_id, outcome)
        if not finalized:
            logger.info("Finalize skipped, job already terminal", job_id=job_id, outcome=outcome.status.value)
            return False

        if dead_letter:
            await self.scheduler.dead_letter(job_id, reason=outcome.error or "attempts exhausted")
        else:
            await self.scheduler.ack(job_id)

        job = await self.store.get(job_id)
        await self.publisher.publish_job(job)
        return True

    async def complete(self, job_id: str, artifact: Artifact, claimant: str) -> bool:
        """
        Success path: upload the artifact, then mark the job succeeded.

        Returns True only for the caller that performed the transition.
        """
        job = await self.store.get(job_id)
        if job.is_terminal:
            return False

        if not await self.store.claim_finalization(job_id, claimant, self.claim_ttl):
            logger.info("Another finalizer owns this job", job_id=job_id, claimant=claimant)
            return False

        metadata = {
            "key": artifact_key(job.owner_id, job.id, artifact),
            "job_id": job.id,
            "owner_id": job.owner_id,
            "content_type": artifact.content_type,
        }

        try:
            reference = await store_with_retries(
                self.storage,
                artifact,
                metadata,
                budget=self.settings.storage_retry_budget,
                delay=self.settings.storage_retry_delay
            )
        except StorageExhaustedError as e:
            logger.error("Artifact storage exhausted", job_id=job_id, error=str(e))
            return await self.fail(job_id, str(e), ErrorKind.STORAGE)
        except BaseException:
            await self.store.release_finalization(job_id, claimant)
            raise

        return await self._finalize(job_id, Outcome.succeeded(reference))

    async def fail(self, job_id: str, error: str, kind: ErrorKind, dead_letter: bool = False) -> bool:
        logger.error("Job failed", job_id=job_id, error_kind=kind.value, error=error)
        return await self._finalize(job_id, Outcome.failed(error, kind), dead_letter=dead_letter)

    async def cancel(self, job_id: str) -> bool:
        cancelled = await self._finalize(job_id, Outcome.cancelled())
        if cancelled:
            logger.info("Job cancelled", job_id=job_id)
        return cancelled

    async def handle_callback(self, provider_ref: str, status: ProviderStatus) -> str:
        """
        Apply a provider completion callback.

        Success and permanent failure finalize directly. Retryable failures
        are left to the worker that owns the job, since only the lease
        holder may schedule a retry.
        """
        job = await self.store.find_by_provider_ref(provider_ref)
        if job is None:
            logger.warning("Callback for unknown provider reference", provider_ref=provider_ref)
            return CallbackResult.UNKNOWN

        if job.is_terminal:
            return CallbackResult.NOOP

        if status.state == ProviderState.SUCCEEDED:
            claimant = f"callback:{uuid.uuid4().hex[:8]}"
            finalized = await self.complete(job.id, status.artifact, claimant)
            return CallbackResult.FINALIZED if finalized else CallbackResult.NOOP

        if status.state == ProviderState.FAILED:
            if status.retryable:
                return CallbackResult.DEFERRED
            kind = ErrorKind.PROVIDER_PARTIAL if status.partial else ErrorKind.PERMANENT_PROVIDER
            finalized = await self.fail(job.id, status.error or "Provider reported failure", kind)
            return CallbackResult.FINALIZED if finalized else CallbackResult.NOOP

        if status.progress is not None and await self.store.update_progress(job.id, status.progress):
            await self.publisher.publish_job(await self.store.get(job.id))
        return CallbackResult.PROGRESS

    async def record_progress(self, job_id: str, pct: Optional[int]) -> bool:
        """Store and broadcast a progress increase"""
        if pct is None or not await self.store.update_progress(job_id, pct):
            return False
        await self.publisher.publish_job(await self.store.get(job_id))
        return True
