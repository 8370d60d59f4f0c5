"""
Generation provider clients.

Components:
- ProviderClient: start / poll / cancel interface with outbound rate limiting
- ReplicateProvider: Replicate predictions API
- FakeProvider: scripted in-process provider for development and tests
"""

from printcraft.providers.base import (
    ProviderClient,
    ProviderStatus,
    ProviderState,
    Artifact,
    RateLimiter,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    RateLimitedError,
)
from printcraft.providers.fake import FakeProvider

__all__ = [
    "ProviderClient",
    "ProviderStatus",
    "ProviderState",
    "Artifact",
    "RateLimiter",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "RateLimitedError",
    "FakeProvider",
]
