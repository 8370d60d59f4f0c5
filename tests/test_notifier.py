import asyncio

from printcraft.jobs.models import Job, JobStatus
from printcraft.notify.base import JobEvent, JobEventPublisher, Notifier, job_channel, owner_channel
from printcraft.notify.memory import InMemoryNotifier


def _job(status=JobStatus.PROCESSING, progress=0, job_id="gen_1", owner_id="u1", **extra):
    return Job(id=job_id, owner_id=owner_id, request={}, status=status, max_attempts=3, progress=progress, **extra)


async def test_subscribers_only_get_their_channel():
    notifier = InMemoryNotifier()
    mine = await notifier.subscribe(job_channel("gen_1"))
    other = await notifier.subscribe(job_channel("gen_2"))

    await notifier.publish(job_channel("gen_1"), JobEvent.from_job(_job()))

    event = await mine.get(timeout=0.1)
    assert event.job_id == "gen_1"
    assert await other.get(timeout=0.05) is None


async def test_close_unsubscribes():
    notifier = InMemoryNotifier()
    subscription = await notifier.subscribe(owner_channel("u1"))
    assert notifier.subscriber_count(owner_channel("u1")) == 1

    await subscription.close()

    assert notifier.subscriber_count(owner_channel("u1")) == 0
    assert await subscription.get(timeout=0.01) is None


async def test_slow_subscriber_drops_oldest():
    notifier = InMemoryNotifier(max_pending=2)
    subscription = await notifier.subscribe(job_channel("gen_1"))

    for pct in (10, 20, 30):
        await notifier.publish(job_channel("gen_1"), JobEvent.from_job(_job(progress=pct)))

    received = [await subscription.get(timeout=0.1), await subscription.get(timeout=0.1)]
    assert [e.progress for e in received] == [20, 30]


async def test_publisher_fans_out_to_job_and_owner():
    notifier = InMemoryNotifier()
    publisher = JobEventPublisher(notifier)
    by_job = await notifier.subscribe(job_channel("gen_1"))
    by_owner = await notifier.subscribe(owner_channel("u1"))

    assert await publisher.publish_job(_job(progress=10))

    assert (await by_job.get(timeout=0.1)).progress == 10
    assert (await by_owner.get(timeout=0.1)).progress == 10


async def test_publisher_keeps_events_monotonic():
    notifier = InMemoryNotifier()
    publisher = JobEventPublisher(notifier)

    assert await publisher.publish_job(_job(JobStatus.PENDING))
    assert await publisher.publish_job(_job(progress=50))
    assert not await publisher.publish_job(_job(progress=40))
    assert not await publisher.publish_job(_job(JobStatus.PENDING))
    assert await publisher.publish_job(_job(JobStatus.SUCCEEDED, progress=100, result="ref"))
    assert not await publisher.publish_job(_job(JobStatus.SUCCEEDED, progress=100, result="ref"))
    assert not await publisher.publish_job(_job(JobStatus.FAILED))


async def test_failed_event_carries_error():
    event = JobEvent.from_job(_job(JobStatus.FAILED, error="content rejected"))

    assert event.error == "content rejected"
    assert event.result is None


class BrokenNotifier(Notifier):

    async def publish(self, channel, event):
        raise ConnectionError("redis down")

    async def subscribe(self, channel):
        raise NotImplementedError


async def test_publish_failures_are_swallowed():
    publisher = JobEventPublisher(BrokenNotifier())

    assert not await publisher.publish_job(_job())


async def test_subscription_iterates_events():
    notifier = InMemoryNotifier()
    subscription = await notifier.subscribe(job_channel("gen_1"))

    async def produce():
        for pct in (10, 20):
            await notifier.publish(job_channel("gen_1"), JobEvent.from_job(_job(progress=pct)))
        await asyncio.sleep(0.01)
        await subscription.close()

    asyncio.create_task(produce())
    received = [event.progress async for event in subscription]

    assert received[:2] == [10, 20]
