import asyncio

import pytest

from printcraft.jobs.database import JobNotFoundError
from printcraft.jobs.models import JobStatus, ErrorKind, Outcome


async def test_create_starts_pending(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    assert job.id.startswith("gen_")
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.progress == 0
    assert job.result is None
    assert job.request == {"prompt": "x"}
    assert job.created_at is not None


async def test_get_missing_raises(store):
    with pytest.raises(JobNotFoundError):
        await store.get("gen_missing")


async def test_try_lease_is_exclusive(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    results = await asyncio.gather(*[
        store.try_lease(job.id, f"worker-{i}", 30.0) for i in range(5)
    ])

    assert results.count(True) == 1
    leased = await store.get(job.id)
    assert leased.status == JobStatus.LEASED
    assert leased.lease_holder == f"worker-{results.index(True)}"
    assert leased.leased_at is not None


async def test_expired_lease_can_be_taken_over(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)
    assert await store.try_lease(job.id, "w1", 0.05)
    assert not await store.try_lease(job.id, "w2", 30.0)

    await asyncio.sleep(0.1)

    assert await store.try_lease(job.id, "w2", 30.0)
    assert (await store.get(job.id)).lease_holder == "w2"


async def test_re_lease_keeps_processing_status(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)
    await store.try_lease(job.id, "w1", 0.05)
    await store.begin_processing(job.id, "w1")
    await asyncio.sleep(0.1)

    assert await store.try_lease(job.id, "w2", 30.0)
    assert (await store.get(job.id)).status == JobStatus.PROCESSING


async def test_begin_processing_requires_lease_and_budget(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=1)

    assert await store.begin_processing(job.id, "w1") is None

    await store.try_lease(job.id, "w1", 30.0)
    started = await store.begin_processing(job.id, "w1")
    assert started.status == JobStatus.PROCESSING
    assert started.attempts == 1

    # Budget spent
    assert await store.begin_processing(job.id, "w1") is None
    assert (await store.get(job.id)).attempts == 1


async def test_progress_only_increases(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    # Not processing yet
    assert not await store.update_progress(job.id, 10)

    await store.try_lease(job.id, "w1", 30.0)
    await store.begin_processing(job.id, "w1")

    assert await store.update_progress(job.id, 40)
    assert not await store.update_progress(job.id, 20)
    assert not await store.update_progress(job.id, 40)
    assert await store.update_progress(job.id, 250)
    assert (await store.get(job.id)).progress == 100


async def test_finalize_is_write_once(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    assert await store.finalize(job.id, Outcome.succeeded("https://cdn/x.png"))
    assert not await store.finalize(job.id, Outcome.failed("late", ErrorKind.PERMANENT_PROVIDER))
    assert not await store.finalize(job.id, Outcome.cancelled())

    final = await store.get(job.id)
    assert final.status == JobStatus.SUCCEEDED
    assert final.result == "https://cdn/x.png"
    assert final.error is None
    assert final.progress == 100
    assert final.completed_at is not None


async def test_terminal_job_cannot_be_leased(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)
    await store.finalize(job.id, Outcome.cancelled())

    assert not await store.try_lease(job.id, "w1", 30.0)


async def test_outcome_result_only_on_success():
    with pytest.raises(ValueError):
        Outcome(JobStatus.FAILED, result="x")
    with pytest.raises(ValueError):
        Outcome(JobStatus.SUCCEEDED)
    with pytest.raises(ValueError):
        Outcome(JobStatus.PROCESSING)


async def test_record_retry_clears_lease_and_provider_ref(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)
    await store.try_lease(job.id, "w1", 30.0)
    await store.begin_processing(job.id, "w1")
    await store.set_provider_ref(job.id, "w1", "pred_1")

    assert not await store.record_retry(job.id, "w2", "boom", ErrorKind.TRANSIENT_PROVIDER)
    assert await store.record_retry(job.id, "w1", "boom", ErrorKind.TRANSIENT_PROVIDER)

    retried = await store.get(job.id)
    assert retried.status == JobStatus.PROCESSING
    assert retried.lease_holder is None
    assert retried.provider_ref is None
    assert retried.error == "boom"
    assert retried.error_kind == ErrorKind.TRANSIENT_PROVIDER


async def test_request_cancel_sets_flag_only(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    flagged = await store.request_cancel(job.id)

    assert flagged.cancel_requested
    assert flagged.status == JobStatus.PENDING


async def test_finalization_claim(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)

    assert await store.claim_finalization(job.id, "poller", 30.0)
    assert await store.claim_finalization(job.id, "poller", 30.0)
    assert not await store.claim_finalization(job.id, "callback", 30.0)

    await store.release_finalization(job.id, "poller")
    assert await store.claim_finalization(job.id, "callback", 30.0)


async def test_list_and_count_for_owner(store):
    for i in range(3):
        await store.create({"prompt": str(i)}, "u1", max_attempts=3)
    await store.create({"prompt": "other"}, "u2", max_attempts=3)

    page = await store.list_for_owner("u1", limit=2, offset=0)
    assert len(page) == 2
    assert page[0].request == {"prompt": "2"}
    assert await store.count_for_owner("u1") == 3

    counts = await store.counts_by_status()
    assert counts["pending"] == 4
    assert counts["succeeded"] == 0


async def test_find_by_provider_ref(store):
    job = await store.create({"prompt": "x"}, "u1", max_attempts=3)
    await store.try_lease(job.id, "w1", 30.0)
    await store.begin_processing(job.id, "w1")
    await store.set_provider_ref(job.id, "w1", "pred_abc")

    found = await store.find_by_provider_ref("pred_abc")
    assert found.id == job.id
    assert await store.find_by_provider_ref("pred_nope") is None
