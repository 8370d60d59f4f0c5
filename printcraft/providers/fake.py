"""
In-process provider for development and tests.

Each start() consumes the next behaviour from a script, so a test can say
"fail transiently twice, then succeed". Predictions advance one step per
poll and finish after `steps` polls.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple

from printcraft.providers.base import (
    ProviderClient,
    ProviderStatus,
    ProviderState,
    Artifact,
    RateLimiter,
    TransientProviderError,
    PermanentProviderError,
)

SUCCEED = "succeed"
TRANSIENT = "transient"
PERMANENT = "permanent"
PARTIAL = "partial"
HANG = "hang"
START_TRANSIENT = "start_transient"
START_PERMANENT = "start_permanent"

# 1x1 transparent PNG
PLACEHOLDER_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


@dataclass
class _Prediction:
    request: Dict[str, Any]
    behaviour: str
    polls: int = 0
    cancelled: bool = False


class FakeProvider(ProviderClient):
    """Scripted stand-in for a remote generation provider."""

    name = "fake"

    def __init__(
        self,
        script: Optional[List[str]] = None,
        steps: int = 2,
        rate_limiter: Optional[RateLimiter] = None
    ):
        super().__init__(rate_limiter)
        self.script = list(script or [])
        self.steps = max(1, steps)
        self.predictions: Dict[str, _Prediction] = {}
        self.start_calls = 0
        self.start_times: List[float] = []
        self.poll_calls = 0
        self.cancelled: List[str] = []

    def _next_behaviour(self) -> str:
        return self.script.pop(0) if self.script else SUCCEED

    async def _start(self, request: Dict[str, Any]) -> str:
        self.start_calls += 1
        self.start_times.append(time.monotonic())
        behaviour = self._next_behaviour()

        if behaviour == START_TRANSIENT:
            raise TransientProviderError("fake provider unavailable (503)")
        if behaviour == START_PERMANENT:
            raise PermanentProviderError("fake provider rejected the request")

        provider_ref = f"fake_{uuid.uuid4().hex[:12]}"
        self.predictions[provider_ref] = _Prediction(request=request, behaviour=behaviour)
        return provider_ref

    async def _poll(self, provider_ref: str) -> ProviderStatus:
        self.poll_calls += 1
        prediction = self.predictions.get(provider_ref)
        if prediction is None:
            raise PermanentProviderError(f"Unknown prediction {provider_ref}")
        if prediction.cancelled:
            return ProviderStatus.failed("Prediction was canceled at the provider")

        prediction.polls += 1
        if prediction.behaviour == HANG or prediction.polls < self.steps:
            pct = min(99, int(100 * prediction.polls / (self.steps + 1)))
            return ProviderStatus.in_progress(pct)

        return self._terminal_status(prediction.behaviour)

    async def _cancel(self, provider_ref: str):
        prediction = self.predictions.get(provider_ref)
        if prediction is not None:
            prediction.cancelled = True
        self.cancelled.append(provider_ref)

    @staticmethod
    def _terminal_status(behaviour: str) -> ProviderStatus:
        if behaviour == TRANSIENT:
            return ProviderStatus.failed("upstream timeout", retryable=True)
        if behaviour == PERMANENT:
            return ProviderStatus.failed("content rejected by safety filter", retryable=False)
        if behaviour == PARTIAL:
            return ProviderStatus.failed("output flagged and unusable", retryable=False, partial=True)
        return ProviderStatus.succeeded(Artifact(data=PLACEHOLDER_PNG, content_type="image/png"))

    def callback_payload(self, provider_ref: str, behaviour: str = SUCCEED) -> Dict[str, Any]:
        """Build the body a completion callback for `provider_ref` would carry."""
        status = self._terminal_status(behaviour)
        return {
            "id": provider_ref,
            "status": status.state.value,
            "error": status.error,
            "retryable": status.retryable,
            "partial": status.partial,
        }

    def parse_callback(self, payload: Dict[str, Any]) -> Tuple[str, ProviderStatus]:
        provider_ref = payload.get("id")
        if not provider_ref:
            raise PermanentProviderError("Callback payload has no id")

        if payload.get("status") == ProviderState.SUCCEEDED.value:
            return provider_ref, ProviderStatus.succeeded(
                Artifact(data=PLACEHOLDER_PNG, content_type="image/png")
            )
        return provider_ref, ProviderStatus.failed(
            payload.get("error") or "failed",
            retryable=bool(payload.get("retryable")),
            partial=bool(payload.get("partial"))
        )
