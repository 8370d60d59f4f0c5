import asyncio
import dataclasses
import time
from typing import Callable, Dict

import pytest

from printcraft.config import PipelineSettings
from printcraft.jobs.database import JobStore
from printcraft.jobs.finalizer import JobFinalizer
from printcraft.jobs.queue import JobScheduler
from printcraft.jobs.service import GenerationService
from printcraft.jobs.worker import WorkerPool
from printcraft.notify.base import JobEventPublisher, JobEvent
from printcraft.notify.memory import InMemoryNotifier
from printcraft.providers.fake import FakeProvider
from printcraft.storage.base import StorageError
from printcraft.storage.local import LocalStorage


FAST_SETTINGS = PipelineSettings(
    concurrency_limit=4,
    max_attempts=3,
    base_backoff=0.2,
    max_backoff=1.0,
    backoff_jitter=0.25,
    lease_duration=0.6,
    max_processing_duration=5.0,
    poll_interval=0.02,
    dequeue_interval=0.02,
    storage_retry_budget=3,
    storage_retry_delay=0.0,
    recovery_sweep_interval=60,
    creation_rate_limit=1000,
)


class FlakyStorage(LocalStorage):
    """LocalStorage that fails its first `failures` uploads."""

    def __init__(self, root_dir: str, failures: int = 0):
        super().__init__(root_dir, "http://test/images")
        self.failures = failures
        self.put_calls = 0

    async def _put(self, key, data, content_type, metadata):
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise StorageError("bucket unavailable")
        return await super()._put(key, data, content_type, metadata)


class RecordingNotifier(InMemoryNotifier):
    """In-memory notifier that also keeps every published event."""

    def __init__(self):
        super().__init__()
        self.published: Dict[str, list] = {}

    async def publish(self, channel: str, event: JobEvent):
        self.published.setdefault(channel, []).append(event)
        await super().publish(channel, event)


class Harness:
    """All pipeline parts wired together against a temp database."""

    def __init__(self, store, provider, storage, notifier, settings):
        self.store = store
        self.provider = provider
        self.storage = storage
        self.notifier = notifier
        self.settings = settings
        self.scheduler = JobScheduler(store, settings)
        self.publisher = JobEventPublisher(notifier)
        self.finalizer = JobFinalizer(store, self.scheduler, storage, self.publisher, settings)
        self.service = GenerationService(
            store, self.scheduler, provider, notifier, self.publisher, self.finalizer, settings
        )
        self.pool = WorkerPool(
            store, self.scheduler, provider, storage, self.publisher, settings,
            name="test-pool", finalizer=self.finalizer
        )

    async def run_until(self, predicate: Callable, timeout: float = 5.0):
        """Drive the pool by hand until `predicate()` (async) is true."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            await self.pool.dispatch()
            if await predicate():
                return
            await asyncio.sleep(0.01)
        raise AssertionError("condition not reached before timeout")

    async def wait_terminal(self, job_id: str, timeout: float = 5.0):
        async def done():
            return (await self.store.get(job_id)).is_terminal
        await self.run_until(done, timeout)
        return await self.store.get(job_id)


@pytest.fixture
async def store(tmp_path):
    job_store = JobStore(str(tmp_path / "jobs.db"))
    await job_store.connect()
    yield job_store
    await job_store.close()


@pytest.fixture
async def scheduler(store):
    job_scheduler = JobScheduler(store, FAST_SETTINGS)
    await job_scheduler.initialize()
    return job_scheduler


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return FAST_SETTINGS


@pytest.fixture
async def make_harness(store, notifier, tmp_path):
    """Factory: make_harness(provider=..., storage_failures=..., **setting_overrides)"""
    created = []

    async def _make(provider=None, storage_failures=0, **overrides):
        h = Harness(
            store,
            provider or FakeProvider(steps=2),
            FlakyStorage(str(tmp_path / "images"), failures=storage_failures),
            notifier,
            dataclasses.replace(FAST_SETTINGS, **overrides)
        )
        await h.scheduler.initialize()
        created.append(h)
        return h

    yield _make

    for h in created:
        await h.pool.shutdown(timeout=1.0)


@pytest.fixture
async def harness(make_harness):
    return await make_harness()
