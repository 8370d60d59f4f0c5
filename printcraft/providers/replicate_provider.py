"""
Replicate generation provider.

Runs predictions through the Replicate API. Completion is observed by
polling predictions.get, or by Replicate's webhook when a callback URL is
configured; both paths map the prediction payload through the same
classification below.
"""

from typing import Optional, Dict, Any, Tuple

import httpx
import replicate
from replicate.exceptions import ReplicateError, ModelError

from printcraft.providers.base import (
    ProviderClient,
    ProviderStatus,
    Artifact,
    RateLimiter,
    TransientProviderError,
    PermanentProviderError,
)
from printcraft.utils.logging import provider_logger as logger


# Error text that indicates a retry may succeed
TRANSIENT_MARKERS = (
    "timeout", "timed out", "rate limit", "429", "500", "502", "503", "504",
    "connection", "temporarily", "overloaded",
)


def is_transient_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def _output_url(output: Any) -> Optional[str]:
    """Predictions return a URL, a list of URLs, or FileOutput objects."""
    if isinstance(output, list):
        output = output[0] if output else None
    if output is None:
        return None
    url = getattr(output, "url", None) or str(output)
    return url or None


def status_from_prediction(
    status: str,
    output: Any = None,
    error: Optional[str] = None,
    progress: Optional[int] = None
) -> ProviderStatus:
    """Classify a Replicate prediction state."""
    if status in ("starting",):
        return ProviderStatus.pending()

    if status == "processing":
        return ProviderStatus.in_progress(progress) if progress is not None else ProviderStatus.pending()

    if status == "succeeded":
        url = _output_url(output)
        if not url:
            # Completed but unusable (e.g. filtered) output
            return ProviderStatus.failed(
                "Provider returned no usable output",
                retryable=False,
                partial=True
            )
        return ProviderStatus.succeeded(Artifact(url=url, content_type=_guess_content_type(url)))

    if status == "canceled":
        return ProviderStatus.failed("Prediction was canceled at the provider", retryable=False)

    message = str(error) if error else "Prediction failed"
    return ProviderStatus.failed(message, retryable=is_transient_message(message))


def _guess_content_type(url: str) -> str:
    path = url.split("?")[0].lower()
    for ext, content_type in (
        (".png", "image/png"),
        (".jpg", "image/jpeg"),
        (".jpeg", "image/jpeg"),
        (".webp", "image/webp"),
    ):
        if path.endswith(ext):
            return content_type
    return "application/octet-stream"


class ReplicateProvider(ProviderClient):
    """Replicate predictions API."""

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model: str,
        webhook_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        super().__init__(rate_limiter)
        self.client = replicate.Client(api_token=api_token)
        self.model = model
        self.webhook_url = webhook_url

    def _target(self) -> Dict[str, str]:
        if ":" in self.model:
            return {"version": self.model.split(":", 1)[1]}
        return {"model": self.model}

    async def _start(self, request: Dict[str, Any]) -> str:
        params: Dict[str, Any] = {"input": request, **self._target()}
        if self.webhook_url:
            params["webhook"] = self.webhook_url
            params["webhook_events_filter"] = ["completed"]

        try:
            prediction = await self.client.predictions.async_create(**params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientProviderError(f"Replicate unreachable: {e}") from e
        except ReplicateError as e:
            raise self._classify(e) from e

        return prediction.id

    async def _poll(self, provider_ref: str) -> ProviderStatus:
        try:
            prediction = await self.client.predictions.async_get(provider_ref)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientProviderError(f"Replicate unreachable: {e}") from e
        except ModelError as e:
            return ProviderStatus.failed(str(e), retryable=is_transient_message(str(e)))
        except ReplicateError as e:
            raise self._classify(e) from e

        progress = None
        prediction_progress = getattr(prediction, "progress", None)
        if prediction_progress is not None and getattr(prediction_progress, "percentage", None) is not None:
            progress = int(prediction_progress.percentage * 100)

        return status_from_prediction(
            prediction.status,
            output=prediction.output,
            error=prediction.error,
            progress=progress
        )

    async def _cancel(self, provider_ref: str):
        try:
            await self.client.predictions.async_cancel(provider_ref)
        except (httpx.HTTPError, ReplicateError) as e:
            # The job is cancelled on our side regardless
            logger.warning("Replicate cancel failed", provider_ref=provider_ref, error=str(e))

    def parse_callback(self, payload: Dict[str, Any]) -> Tuple[str, ProviderStatus]:
        provider_ref = payload.get("id")
        if not provider_ref:
            raise PermanentProviderError("Callback payload has no prediction id")
        return provider_ref, status_from_prediction(
            payload.get("status", ""),
            output=payload.get("output"),
            error=payload.get("error")
        )

    @staticmethod
    def _classify(error: ReplicateError) -> Exception:
        status = getattr(error, "status", None)
        message = str(error)
        if status == 429 or (status is not None and status >= 500) or is_transient_message(message):
            return TransientProviderError(f"Replicate error: {message}")
        return PermanentProviderError(f"Replicate rejected the request: {message}")
