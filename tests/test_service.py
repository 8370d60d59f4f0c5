import asyncio

import pytest

from printcraft.jobs.database import JobNotFoundError
from printcraft.jobs.models import JobStatus
from printcraft.jobs.service import CreationRateLimitedError, InvalidRequestError

REQUEST = {"prompt": "a lighthouse at dusk", "style": "watercolor"}


async def test_creation_is_rate_limited_per_owner(make_harness):
    harness = await make_harness(creation_rate_limit=2)

    await harness.service.create_job("u1", REQUEST)
    await harness.service.create_job("u1", REQUEST)

    with pytest.raises(CreationRateLimitedError):
        await harness.service.create_job("u1", REQUEST)

    # Other callers have their own window
    assert (await harness.service.create_job("u2", REQUEST)).owner_id == "u2"

    # A rejected submission leaves nothing behind
    _, total = await harness.service.list_jobs("u1")
    assert total == 2


async def test_invalid_request_does_not_count_against_the_limit(make_harness):
    harness = await make_harness(creation_rate_limit=1)

    with pytest.raises(InvalidRequestError):
        await harness.service.create_job("u1", {})

    assert (await harness.service.create_job("u1", REQUEST)).status == JobStatus.PENDING


async def test_creation_limit_window_slides(make_harness):
    harness = await make_harness(creation_rate_limit=1, creation_rate_period=0.1)

    await harness.service.create_job("u1", REQUEST)
    with pytest.raises(CreationRateLimitedError):
        await harness.service.create_job("u1", REQUEST)

    await asyncio.sleep(0.15)
    assert (await harness.service.create_job("u1", REQUEST)).owner_id == "u1"


async def test_regenerate_submits_a_copy_of_the_request(harness):
    source = await harness.service.create_job("u1", REQUEST)

    job = await harness.service.regenerate_job("u1", source.id)

    assert job.id != source.id
    assert job.owner_id == "u1"
    assert job.request == REQUEST
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert await harness.scheduler.get_entry(job.id) is not None


async def test_regenerate_of_another_owners_job_is_not_found(harness):
    source = await harness.service.create_job("u1", REQUEST)

    with pytest.raises(JobNotFoundError):
        await harness.service.regenerate_job("u2", source.id)

    _, total = await harness.service.list_jobs("u2")
    assert total == 0
