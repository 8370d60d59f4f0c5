import time

import pytest

from printcraft.providers.base import (
    Artifact,
    ProviderState,
    RateLimiter,
    RateLimitedError,
    PermanentProviderError,
)
from printcraft.providers.fake import FakeProvider, PLACEHOLDER_PNG, HANG
from printcraft.providers.replicate_provider import status_from_prediction, is_transient_message
from printcraft.storage.base import artifact_key


class TestReplicateStatusMapping:

    def test_starting_is_pending(self):
        assert status_from_prediction("starting").state == ProviderState.PENDING

    def test_processing_reports_progress(self):
        status = status_from_prediction("processing", progress=42)
        assert status.state == ProviderState.PROGRESS
        assert status.progress == 42

    def test_succeeded_with_output(self):
        status = status_from_prediction("succeeded", output=["https://replicate.delivery/out-0.webp"])
        assert status.state == ProviderState.SUCCEEDED
        assert status.artifact.url == "https://replicate.delivery/out-0.webp"
        assert status.artifact.content_type == "image/webp"

    def test_succeeded_without_output_is_partial(self):
        status = status_from_prediction("succeeded", output=[])
        assert status.state == ProviderState.FAILED
        assert status.partial
        assert not status.retryable

    def test_failed_classification(self):
        assert status_from_prediction("failed", error="CUDA out of memory, 503").retryable
        assert not status_from_prediction("failed", error="NSFW content detected").retryable
        assert not status_from_prediction("canceled").retryable

    def test_transient_markers(self):
        assert is_transient_message("Request timed out")
        assert is_transient_message("Rate limit exceeded")
        assert not is_transient_message("Invalid input: width must be a multiple of 8")


class TestRateLimiter:

    async def test_allows_calls_within_limit(self):
        limiter = RateLimiter(max_calls=3, period=60.0, max_wait=0.0)
        for _ in range(3):
            await limiter.acquire()

    async def test_rejects_when_wait_would_exceed_max(self):
        limiter = RateLimiter(max_calls=1, period=60.0, max_wait=0.05)
        await limiter.acquire()

        with pytest.raises(RateLimitedError) as exc:
            await limiter.acquire()
        assert exc.value.retryable

    async def test_queues_until_window_frees(self):
        limiter = RateLimiter(max_calls=2, period=0.1, max_wait=1.0)
        start = time.monotonic()
        for _ in range(3):
            await limiter.acquire()

        assert time.monotonic() - start >= 0.09

    async def test_provider_calls_are_throttled(self):
        provider = FakeProvider(rate_limiter=RateLimiter(max_calls=1, period=60.0, max_wait=0.0))
        await provider.start({"prompt": "x"})

        with pytest.raises(RateLimitedError):
            await provider.start({"prompt": "y"})
        assert provider.start_calls == 1


class TestFakeProvider:

    async def test_progresses_then_succeeds(self):
        provider = FakeProvider(steps=3)
        ref = await provider.start({"prompt": "x"})

        states = [(await provider.poll(ref)).state for _ in range(3)]

        assert states == [ProviderState.PROGRESS, ProviderState.PROGRESS, ProviderState.SUCCEEDED]

    async def test_cancelled_prediction_reports_failure(self):
        provider = FakeProvider(script=[HANG])
        ref = await provider.start({"prompt": "x"})
        await provider.cancel(ref)

        status = await provider.poll(ref)
        assert status.state == ProviderState.FAILED
        assert provider.cancelled == [ref]

    async def test_unknown_reference(self):
        with pytest.raises(PermanentProviderError):
            await FakeProvider().poll("fake_missing")

    def test_callback_round_trip(self):
        provider = FakeProvider()
        ref, status = provider.parse_callback(provider.callback_payload("fake_1"))

        assert ref == "fake_1"
        assert status.state == ProviderState.SUCCEEDED
        assert status.artifact.data == PLACEHOLDER_PNG

    def test_callback_without_id(self):
        with pytest.raises(PermanentProviderError):
            FakeProvider().parse_callback({"status": "succeeded"})


def test_artifact_key_is_deterministic():
    artifact = Artifact(data=b"x", content_type="image/jpeg")

    assert artifact_key("u1", "gen_1", artifact) == "generations/u1/gen_1.jpeg"
    assert artifact_key("../evil", "gen_1", artifact) == "generations/evil/gen_1.jpeg"


def test_artifact_requires_content():
    with pytest.raises(ValueError):
        Artifact()
