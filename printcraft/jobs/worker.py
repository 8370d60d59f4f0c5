"""
Worker pool for generation jobs.

An APScheduler interval job dequeues work while the pool has free slots and
runs each job in its own task. Every task holds the job's lease for as long
as it works on it, renewing it from a heartbeat; a worker that loses its
lease stops without writing anything further.
"""

import asyncio
import time
import uuid
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from printcraft.config import PipelineSettings
from printcraft.jobs.database import JobStore, JobNotFoundError
from printcraft.jobs.finalizer import JobFinalizer
from printcraft.jobs.models import Job, ErrorKind
from printcraft.jobs.queue import JobScheduler
from printcraft.notify.base import JobEventPublisher
from printcraft.providers.base import ProviderClient, ProviderError, ProviderState, ProviderStatus
from printcraft.storage.base import StorageClient
from printcraft.utils.logging import worker_logger as logger


class LeaseLostError(Exception):
    """The worker no longer owns the job it was processing."""


class AttemptFailed(Exception):
    """A processing attempt ended in a failure the retry policy must judge."""

    def __init__(self, message: str, kind: ErrorKind, retryable: bool, resumable: bool = False):
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        # The provider request may still be running and the retry can poll it
        self.resumable = resumable


class GenerationWorker:
    """
    Processes one leased job to completion, retry or failure.

    A new instance (and lease holder id) is used for every dequeued job, so
    a stale lease from a crashed run can never be mistaken for a live one.
    """

    def __init__(
        self,
        worker_id: str,
        store: JobStore,
        scheduler: JobScheduler,
        provider: ProviderClient,
        finalizer: JobFinalizer,
        publisher: JobEventPublisher,
        settings: PipelineSettings
    ):
        self.worker_id = worker_id
        self.store = store
        self.scheduler = scheduler
        self.provider = provider
        self.finalizer = finalizer
        self.publisher = publisher
        self.settings = settings
        self._lease_lost = asyncio.Event()
        self.log = logger.bind(worker_id=worker_id)

    async def run(self, job_id: str):
        """Entry point for a dequeued job. Never raises."""
        try:
            await self._run(job_id)
        except LeaseLostError:
            self.log.warning("Lease lost, abandoning job", job_id=job_id)
        except JobNotFoundError:
            self.log.error("Queued job does not exist", job_id=job_id)
            await self.scheduler.ack(job_id)
        except Exception as e:
            self.log.error("Worker error", job_id=job_id, error=str(e))

    async def _run(self, job_id: str):
        if not await self.store.try_lease(job_id, self.worker_id, self.settings.lease_duration):
            job = await self.store.get(job_id)
            if job.is_terminal:
                await self.scheduler.ack(job_id)
            else:
                # Previous holder's lease has not lapsed yet; look again when it does
                await self.scheduler.enqueue(job_id, not_before=job.lease_expires_at)
            return

        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            await self._process(job_id)
        except asyncio.CancelledError:
            # Shutdown: hand the job back so another worker resumes it now
            if await self.store.release_lease(job_id, self.worker_id):
                await self.scheduler.enqueue(job_id)
                self.log.info("Lease released on shutdown", job_id=job_id)
            raise
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _heartbeat(self, job_id: str):
        interval = self.settings.lease_duration / 3
        while True:
            await asyncio.sleep(interval)
            if not await self.scheduler.extend_lease(job_id, self.worker_id):
                self._lease_lost.set()
                return

    def _check_lease(self):
        if self._lease_lost.is_set():
            raise LeaseLostError()

    async def _process(self, job_id: str):
        job = await self.store.get(job_id)

        if job.is_terminal:
            await self.scheduler.ack(job_id)
            return

        if job.cancel_requested:
            await self._cancel(job)
            return

        if job.attempts >= job.max_attempts:
            # Crashed on its final attempt; nothing left to retry
            await self.finalizer.fail(
                job.id,
                job.error or "Attempts exhausted",
                ErrorKind.ATTEMPTS_EXHAUSTED,
                dead_letter=True
            )
            return

        job = await self.store.begin_processing(job_id, self.worker_id)
        if job is None:
            raise LeaseLostError()

        await self.publisher.publish_job(job)
        self.log.info(
            "Processing job",
            job_id=job.id,
            attempt=job.attempts,
            max_attempts=job.max_attempts
        )
        start_time = time.time()

        try:
            status = await asyncio.wait_for(
                self._drive_provider(job),
                timeout=self.settings.max_processing_duration
            )
        except asyncio.TimeoutError:
            await self._abandon_provider_request(job.id)
            await self._handle_failure(
                job,
                AttemptFailed(
                    f"Attempt exceeded {self.settings.max_processing_duration:g}s",
                    ErrorKind.TIMEOUT,
                    retryable=True
                )
            )
            return
        except AttemptFailed as e:
            await self._handle_failure(job, e)
            return
        except ProviderError as e:
            kind = ErrorKind.TRANSIENT_PROVIDER if e.retryable else ErrorKind.PERMANENT_PROVIDER
            await self._handle_failure(job, AttemptFailed(str(e), kind, e.retryable))
            return
        except (LeaseLostError, JobNotFoundError):
            raise
        except Exception as e:
            self.log.error("Unexpected processing error", job_id=job.id, error=str(e))
            await self._abandon_provider_request(job.id)
            await self._handle_failure(job, AttemptFailed(str(e), ErrorKind.TRANSIENT_PROVIDER, retryable=True))
            return

        if status is None:
            return

        self._check_lease()
        finalized = await self.finalizer.complete(job.id, status.artifact, claimant=self.worker_id)
        if finalized:
            self.log.info(
                "Job completed",
                job_id=job.id,
                duration_seconds=round(time.time() - start_time, 2)
            )
            return

        if not (await self.store.get(job.id)).is_terminal:
            await self._defer_to_claimant(job.id)

    async def _drive_provider(self, job: Job) -> Optional[ProviderStatus]:
        """
        Start (or resume) the provider request and poll it to a terminal state.

        Returns the succeeded status, or None when the job was settled some
        other way (cancelled, or finalized by a callback).
        """
        provider_ref = job.provider_ref
        if provider_ref:
            self.log.info("Resuming provider request", job_id=job.id, provider_ref=provider_ref)
        else:
            provider_ref = await self.provider.start(job.request)
            self._check_lease()
            if not await self.store.set_provider_ref(job.id, self.worker_id, provider_ref):
                raise LeaseLostError()

        while True:
            self._check_lease()

            current = await self.store.get(job.id)
            if current.is_terminal:
                await self.scheduler.ack(job.id)
                return None

            if current.cancel_requested:
                await self._abandon_provider_request(job.id, provider_ref)
                await self._cancel(current)
                return None

            try:
                status = await self.provider.poll(provider_ref)
            except ProviderError as e:
                if not e.retryable:
                    await self._abandon_provider_request(job.id, provider_ref)
                    raise
                raise AttemptFailed(str(e), ErrorKind.TRANSIENT_PROVIDER, retryable=True, resumable=True)
            await self.finalizer.record_progress(job.id, status.progress)

            if status.state == ProviderState.SUCCEEDED:
                return status

            if status.state == ProviderState.FAILED:
                if status.retryable:
                    kind = ErrorKind.TRANSIENT_PROVIDER
                elif status.partial:
                    kind = ErrorKind.PROVIDER_PARTIAL
                else:
                    kind = ErrorKind.PERMANENT_PROVIDER
                raise AttemptFailed(status.error or "Provider reported failure", kind, status.retryable)

            await asyncio.sleep(self.settings.poll_interval)

    async def _defer_to_claimant(self, job_id: str):
        """
        Another finalizer (a provider callback) holds the upload claim. Hand
        the job back and look again when that claim lapses, in case its
        upload never lands.
        """
        retry_at = await self.store.finalization_expires_at(job_id)
        await self.store.release_lease(job_id, self.worker_id)
        await self.scheduler.enqueue(job_id, not_before=retry_at)
        self.log.info("Completion claimed elsewhere, rechecking later", job_id=job_id, retry_at=retry_at)

    async def _abandon_provider_request(self, job_id: str, provider_ref: Optional[str] = None):
        if provider_ref is None:
            job = await self.store.get(job_id)
            provider_ref = job.provider_ref
        if not provider_ref:
            return
        try:
            await self.provider.cancel(provider_ref)
        except ProviderError as e:
            self.log.warning("Provider cancel failed", job_id=job_id, provider_ref=provider_ref, error=str(e))

    async def _cancel(self, job: Job):
        await self.finalizer.cancel(job.id)

    async def _handle_failure(self, job: Job, failure: AttemptFailed):
        self._check_lease()

        if not failure.retryable:
            await self.finalizer.fail(job.id, str(failure), failure.kind)
            return

        if job.attempts >= job.max_attempts:
            if failure.resumable:
                await self._abandon_provider_request(job.id)
            await self.finalizer.fail(
                job.id,
                f"{failure} (gave up after {job.attempts} attempts)",
                ErrorKind.ATTEMPTS_EXHAUSTED,
                dead_letter=True
            )
            return

        retried = await self.store.record_retry(
            job.id,
            self.worker_id,
            str(failure),
            failure.kind,
            keep_provider_ref=failure.resumable
        )
        if not retried:
            raise LeaseLostError()
        await self.scheduler.requeue_with_backoff(job.id, job.attempts)


class WorkerPool:
    """
    Runs up to `concurrency_limit` GenerationWorkers at once.

    Usage:
        pool = WorkerPool(store, scheduler, provider, storage, publisher, settings)
        pool.start()
        ...
        await pool.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: JobScheduler,
        provider: ProviderClient,
        storage: StorageClient,
        publisher: JobEventPublisher,
        settings: PipelineSettings,
        name: Optional[str] = None,
        finalizer: Optional[JobFinalizer] = None
    ):
        self.store = store
        self.scheduler = scheduler
        self.provider = provider
        self.storage = storage
        self.publisher = publisher
        self.settings = settings
        self.name = name or f"worker-{uuid.uuid4().hex[:6]}"
        self.finalizer = finalizer or JobFinalizer(store, scheduler, storage, publisher, settings)

        self.apscheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stopping = False

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def _new_worker(self) -> GenerationWorker:
        return GenerationWorker(
            worker_id=f"{self.name}:{uuid.uuid4().hex[:8]}",
            store=self.store,
            scheduler=self.scheduler,
            provider=self.provider,
            finalizer=self.finalizer,
            publisher=self.publisher,
            settings=self.settings
        )

    async def dispatch(self) -> int:
        """
        Fill free slots with dequeued jobs.
        Called by the scheduler every dequeue_interval seconds.
        """
        started = 0
        while not self._stopping and len(self._tasks) < self.settings.concurrency_limit:
            worker = self._new_worker()
            try:
                job_id = await self.scheduler.dequeue(worker.worker_id)
            except Exception as e:
                logger.error("Dequeue failed", error=str(e))
                break
            if job_id is None:
                break

            task = asyncio.create_task(worker.run(job_id))
            self._tasks[worker.worker_id] = task
            task.add_done_callback(lambda _t, key=worker.worker_id: self._tasks.pop(key, None))
            started += 1
        return started

    async def recover(self) -> int:
        try:
            return await self.scheduler.recover_orphans()
        except Exception as e:
            logger.error("Orphan recovery failed", error=str(e))
            return 0

    def start(self):
        """Start dispatching. Must be called from a running event loop."""
        self._stopping = False
        self.apscheduler = AsyncIOScheduler()
        self.apscheduler.add_job(
            self.dispatch,
            trigger=IntervalTrigger(seconds=self.settings.dequeue_interval),
            id="dispatch_jobs",
            name="Dispatch queued generation jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.apscheduler.add_job(
            self.recover,
            trigger=IntervalTrigger(seconds=self.settings.recovery_sweep_interval),
            id="recover_orphans",
            name="Re-enqueue orphaned jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.apscheduler.start()

        logger.info(
            "Worker pool started",
            pool=self.name,
            concurrency_limit=self.settings.concurrency_limit,
            dequeue_interval=self.settings.dequeue_interval
        )

    async def shutdown(self, timeout: float = 10.0):
        """
        Stop dispatching and wait for in-flight jobs.

        Jobs still running after `timeout` are cancelled; their leases are
        released and the jobs re-enqueued for another worker.
        """
        self._stopping = True
        if self.apscheduler and self.apscheduler.running:
            self.apscheduler.shutdown(wait=False)

        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Worker pool stopped", pool=self.name)
