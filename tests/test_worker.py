import asyncio

from printcraft.jobs.models import JobStatus, ErrorKind
from printcraft.notify.base import job_channel
from printcraft.providers.fake import (
    FakeProvider,
    TRANSIENT,
    PERMANENT,
    PARTIAL,
    HANG,
    START_TRANSIENT,
    START_PERMANENT,
)
from printcraft.providers.base import TransientProviderError

REQUEST = {"prompt": "a lighthouse at dusk", "style": "watercolor"}


class FlakyPollProvider(FakeProvider):
    """FakeProvider whose first `failures` polls raise a connection error."""

    def __init__(self, failures: int, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def _poll(self, provider_ref):
        if self.failures > 0:
            self.failures -= 1
            raise TransientProviderError("connection reset")
        return await super()._poll(provider_ref)


_ORDER = [JobStatus.PENDING, JobStatus.LEASED, JobStatus.PROCESSING]


def assert_monotonic(events):
    """Statuses never regress, progress never decreases, terminal is last."""
    last_rank, last_progress = -1, -1
    for i, event in enumerate(events):
        rank = 3 if event.status.is_terminal else _ORDER.index(event.status)
        assert rank >= last_rank
        if rank == last_rank:
            assert (event.progress or 0) >= last_progress
        if event.status.is_terminal:
            assert i == len(events) - 1
        last_rank, last_progress = rank, event.progress or 0


async def test_job_succeeds_on_first_attempt(harness, notifier):
    job = await harness.service.create_job("u1", REQUEST)
    assert job.status == JobStatus.PENDING

    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 1
    assert final.progress == 100
    assert final.result == f"http://test/images/generations/u1/{job.id}.png"
    assert harness.storage.uploads == 1
    assert await harness.scheduler.get_entry(job.id) is None

    events = notifier.published[job_channel(job.id)]
    assert events[0].status == JobStatus.PENDING
    assert events[-1].status == JobStatus.SUCCEEDED
    assert events[-1].result == final.result
    assert_monotonic(events)


async def test_transient_failures_retry_with_backoff(make_harness, notifier):
    provider = FakeProvider(script=[TRANSIENT, TRANSIENT], steps=2)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 3
    assert provider.start_calls == 3

    interval = provider.start_times[1] - provider.start_times[0]
    assert harness.settings.base_backoff <= interval < harness.settings.max_backoff

    # Callers never see the retries as separate terminal events
    events = notifier.published[job_channel(job.id)]
    assert [e.status for e in events].count(JobStatus.SUCCEEDED) == 1
    assert not any(e.status == JobStatus.FAILED for e in events)
    assert_monotonic(events)


async def test_transient_failure_at_start_is_retried(make_harness):
    provider = FakeProvider(script=[START_TRANSIENT], steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 2


async def test_exhaustion_fails_and_dead_letters(make_harness):
    provider = FakeProvider(script=[TRANSIENT] * 5, steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.attempts == harness.settings.max_attempts
    assert final.error_kind == ErrorKind.ATTEMPTS_EXHAUSTED
    assert "upstream timeout" in final.error
    assert final.result is None

    entry = await harness.scheduler.get_entry(job.id)
    assert entry.dead_lettered

    # Never re-enqueued afterwards
    assert not await harness.scheduler.enqueue(job.id)
    await asyncio.sleep(harness.settings.base_backoff)
    await harness.pool.dispatch()
    assert provider.start_calls == harness.settings.max_attempts


async def test_permanent_failure_is_not_retried(make_harness):
    provider = FakeProvider(script=[PERMANENT], steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.attempts == 1
    assert final.error_kind == ErrorKind.PERMANENT_PROVIDER
    assert provider.start_calls == 1
    assert await harness.scheduler.get_entry(job.id) is None


async def test_rejected_request_fails_immediately(make_harness):
    provider = FakeProvider(script=[START_PERMANENT])
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorKind.PERMANENT_PROVIDER
    assert final.attempts == 1


async def test_partial_output_is_a_permanent_failure(make_harness):
    provider = FakeProvider(script=[PARTIAL], steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorKind.PROVIDER_PARTIAL
    assert final.attempts == 1
    assert harness.storage.uploads == 0


async def test_cancellation_while_processing(make_harness, notifier):
    provider = FakeProvider(script=[HANG])
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)

    async def processing():
        current = await harness.store.get(job.id)
        return current.status == JobStatus.PROCESSING and current.provider_ref is not None
    await harness.run_until(processing)

    loop = asyncio.get_running_loop()
    requested_at = loop.time()
    await harness.service.cancel_job("u1", job.id)

    async def cancelled():
        return (await harness.store.get(job.id)).status == JobStatus.CANCELLED
    await harness.run_until(cancelled, timeout=2.0)
    elapsed = loop.time() - requested_at

    # Latency is bounded by one poll interval plus the round-trips around it
    assert elapsed < harness.settings.poll_interval + 0.2

    final = await harness.store.get(job.id)
    assert final.result is None
    assert harness.storage.uploads == 0
    assert provider.cancelled == [final.provider_ref]

    events = notifier.published[job_channel(job.id)]
    assert events[-1].status == JobStatus.CANCELLED
    assert events[-1].error is None


async def test_cancel_queued_job_is_immediate(harness):
    job = await harness.service.create_job("u1", REQUEST)

    result = await harness.service.cancel_job("u1", job.id)

    assert result.status == JobStatus.CANCELLED
    assert harness.provider.start_calls == 0
    assert await harness.scheduler.get_entry(job.id) is None


async def test_crash_recovery_reprocesses_after_lease_expiry(make_harness, settings):
    provider = FakeProvider(steps=2)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)

    # A worker leases the job, starts processing, then disappears
    assert await harness.scheduler.dequeue("ghost") == job.id
    assert await harness.store.try_lease(job.id, "ghost", settings.lease_duration)
    assert (await harness.store.begin_processing(job.id, "ghost")).attempts == 1

    # Not re-leasable while the ghost's lease is live
    await harness.pool.dispatch()
    await asyncio.sleep(0.05)
    assert (await harness.store.get(job.id)).lease_holder == "ghost"

    final = await harness.wait_terminal(job.id, timeout=settings.lease_duration * 5)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 2
    assert harness.storage.uploads == 1


async def test_crash_recovery_resumes_in_flight_provider_request(make_harness, settings):
    provider = FakeProvider(steps=2)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    await harness.scheduler.dequeue("ghost")
    await harness.store.try_lease(job.id, "ghost", settings.lease_duration)
    await harness.store.begin_processing(job.id, "ghost")
    provider_ref = await provider.start(job.request)
    await harness.store.set_provider_ref(job.id, "ghost", provider_ref)

    final = await harness.wait_terminal(job.id, timeout=settings.lease_duration * 5)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 2
    assert provider.start_calls == 1


async def test_storage_retries_do_not_consume_attempts(make_harness):
    harness = await make_harness(storage_failures=2)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 1
    assert harness.storage.put_calls == 3


async def test_storage_budget_exhaustion_fails_job(make_harness):
    harness = await make_harness(storage_failures=10)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorKind.STORAGE
    assert final.attempts == 1
    assert final.result is None
    assert harness.storage.put_calls == harness.settings.storage_retry_budget


async def test_processing_timeout_is_retried_then_fails(make_harness):
    provider = FakeProvider(script=[HANG, HANG])
    harness = await make_harness(provider=provider, max_attempts=2, max_processing_duration=0.1)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.attempts == 2
    assert final.error_kind == ErrorKind.ATTEMPTS_EXHAUSTED
    assert "exceeded" in final.error
    assert len(provider.cancelled) == 2


async def test_concurrency_limit_bounds_active_jobs(make_harness):
    provider = FakeProvider(script=[HANG] * 5)
    harness = await make_harness(provider=provider, concurrency_limit=2)

    for _ in range(5):
        await harness.service.create_job("u1", REQUEST)

    for _ in range(5):
        await harness.pool.dispatch()
        await asyncio.sleep(0.02)

    assert harness.pool.active_jobs == 2
    stats = await harness.scheduler.stats()
    assert stats["leased"] == 2
    assert stats["ready"] == 3


async def test_pool_start_processes_jobs_on_its_own(harness):
    harness.pool.start()
    job = await harness.service.create_job("u1", REQUEST)

    for _ in range(200):
        if (await harness.store.get(job.id)).is_terminal:
            break
        await asyncio.sleep(0.02)

    assert (await harness.store.get(job.id)).status == JobStatus.SUCCEEDED


async def test_transient_poll_error_resumes_the_same_request(make_harness):
    provider = FlakyPollProvider(failures=1, steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert final.attempts == 2
    assert provider.start_calls == 1
    assert provider.cancelled == []


async def test_exhausted_poll_errors_cancel_the_provider_request(make_harness):
    provider = FlakyPollProvider(failures=100, steps=1)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorKind.ATTEMPTS_EXHAUSTED
    assert "connection reset" in final.error
    assert provider.start_calls == 1
    assert provider.cancelled == [final.provider_ref]


async def test_worker_defers_to_live_completion_claim(make_harness):
    provider = FakeProvider(steps=2)
    harness = await make_harness(provider=provider)

    job = await harness.service.create_job("u1", REQUEST)
    assert await harness.store.claim_finalization(job.id, "callback:other", 0.5)
    claim_expiry = await harness.store.finalization_expires_at(job.id)

    async def deferred():
        entry = await harness.scheduler.get_entry(job.id)
        return entry is not None and entry.not_before == claim_expiry
    await harness.run_until(deferred)

    current = await harness.store.get(job.id)
    assert current.status == JobStatus.PROCESSING
    assert current.lease_holder is None
    assert harness.storage.uploads == 0

    # The claim lapses without an upload, so the worker finishes the job
    final = await harness.wait_terminal(job.id)

    assert final.status == JobStatus.SUCCEEDED
    assert harness.storage.uploads == 1
    assert provider.start_calls == 1
