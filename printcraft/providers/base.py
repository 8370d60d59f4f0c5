"""
Generation provider abstraction.

A provider accepts an opaque request, runs it remotely, and is observed
either by polling or by a completion callback correlated through the
provider reference returned from start().
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from printcraft.utils.logging import provider_logger as logger


# =============================================================================
# Errors
# =============================================================================

class ProviderError(Exception):
    """A provider call failed. `retryable` decides whether a retry may help."""

    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class TransientProviderError(ProviderError):
    """Network timeout, 5xx-equivalent, rate limiting."""
    retryable = True


class PermanentProviderError(ProviderError):
    """Invalid request, content rejected."""
    retryable = False


class RateLimitedError(TransientProviderError):
    """The outbound rate limit could not be satisfied in time."""


# =============================================================================
# Results
# =============================================================================

class ProviderState(str, Enum):
    PENDING = "pending"
    PROGRESS = "progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Artifact:
    """Generated output: raw bytes, or a URL the storage client downloads."""
    data: Optional[bytes] = None
    url: Optional[str] = None
    content_type: str = "image/png"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.data is None and self.url is None:
            raise ValueError("Artifact needs either data or url")

    @property
    def extension(self) -> str:
        return self.content_type.split("/")[-1].split(";")[0] or "bin"


@dataclass
class ProviderStatus:
    """One observation of an in-flight provider request."""
    state: ProviderState
    progress: Optional[int] = None
    artifact: Optional[Artifact] = None
    error: Optional[str] = None
    retryable: bool = False
    partial: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProviderState.SUCCEEDED, ProviderState.FAILED)

    @classmethod
    def pending(cls) -> "ProviderStatus":
        return cls(ProviderState.PENDING)

    @classmethod
    def in_progress(cls, pct: int) -> "ProviderStatus":
        return cls(ProviderState.PROGRESS, progress=pct)

    @classmethod
    def succeeded(cls, artifact: Artifact) -> "ProviderStatus":
        return cls(ProviderState.SUCCEEDED, progress=100, artifact=artifact)

    @classmethod
    def failed(cls, error: str, retryable: bool = False, partial: bool = False) -> "ProviderStatus":
        return cls(ProviderState.FAILED, error=error, retryable=retryable, partial=partial)


# =============================================================================
# Rate limiting
# =============================================================================

class RateLimiter:
    """
    Sliding-window limiter, used for outbound provider calls and for
    per-caller job submissions.

    Callers queue for a slot up to `max_wait` seconds; past that the call is
    rejected with RateLimitedError so the job can be retried later.
    """

    def __init__(self, max_calls: int, period: float = 60.0, max_wait: float = 10.0):
        self.max_calls = max_calls
        self.period = period
        self.max_wait = max_wait
        self._calls: deque = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float):
        while self._calls and self._calls[0] <= now - self.period:
            self._calls.popleft()

    @property
    def idle(self) -> bool:
        """No call inside the current window"""
        return not self._calls or self._calls[-1] <= time.monotonic() - self.period

    async def acquire(self):
        deadline = time.monotonic() + self.max_wait
        async with self._lock:
            while True:
                now = time.monotonic()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return

                wait = self._calls[0] + self.period - now
                if now + wait > deadline:
                    raise RateLimitedError(
                        f"Rate limit of {self.max_calls} calls per {self.period:g}s exceeded"
                    )
                await asyncio.sleep(wait)


# =============================================================================
# Client interface
# =============================================================================

class ProviderClient(ABC):
    """
    Base class for generation providers.

    Subclasses implement the _start/_poll/_cancel hooks; the public methods
    apply the outbound rate limit.
    """

    name = "provider"

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.rate_limiter = rate_limiter

    async def _throttle(self):
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

    async def start(self, request: Dict[str, Any]) -> str:
        """Submit a request; returns the provider reference."""
        await self._throttle()
        provider_ref = await self._start(request)
        logger.info("Provider request started", provider=self.name, provider_ref=provider_ref)
        return provider_ref

    async def poll(self, provider_ref: str) -> ProviderStatus:
        await self._throttle()
        return await self._poll(provider_ref)

    async def cancel(self, provider_ref: str):
        await self._throttle()
        await self._cancel(provider_ref)
        logger.info("Provider request cancelled", provider=self.name, provider_ref=provider_ref)

    def parse_callback(self, payload: Dict[str, Any]) -> Tuple[str, ProviderStatus]:
        """Map an inbound completion callback body to (provider_ref, status)."""
        raise PermanentProviderError(f"{self.name} does not support completion callbacks")

    async def close(self):
        pass

    @abstractmethod
    async def _start(self, request: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def _poll(self, provider_ref: str) -> ProviderStatus:
        ...

    @abstractmethod
    async def _cancel(self, provider_ref: str):
        ...
