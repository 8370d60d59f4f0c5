"""
Object storage abstraction for generated artifacts.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

import httpx

from printcraft.providers.base import Artifact
from printcraft.utils.logging import storage_logger as logger


class StorageError(Exception):
    """An upload or download failed; treated as transient within the retry budget."""
    pass


class StorageExhaustedError(StorageError):
    """The storage retry budget is spent; the job fails permanently."""
    pass


class StorageClient(ABC):
    """Uploads artifacts and returns a retrievable reference (URL)."""

    name = "storage"

    def __init__(self, http_timeout: float = 60.0):
        self.http_timeout = http_timeout

    async def store(self, artifact: Artifact, metadata: Dict[str, Any]) -> str:
        """
        Persist an artifact.

        Args:
            artifact: Bytes or a provider URL to download from
            metadata: Must contain `key`, the object path to write

        Returns:
            Public reference to the stored object
        """
        data = await self.artifact_bytes(artifact)
        return await self._put(metadata["key"], data, artifact.content_type, metadata)

    async def artifact_bytes(self, artifact: Artifact) -> bytes:
        if artifact.data is not None:
            return artifact.data

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=True) as http_client:
                response = await http_client.get(artifact.url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to download artifact from {artifact.url}: {e}") from e

    async def close(self):
        pass

    @abstractmethod
    async def _put(self, key: str, data: bytes, content_type: str, metadata: Dict[str, Any]) -> str:
        ...


def artifact_key(owner_id: str, job_id: str, artifact: Artifact) -> str:
    """Deterministic per job, so a re-upload overwrites instead of duplicating."""
    safe_owner = "".join(c for c in owner_id if c.isalnum() or c in ("-", "_")) or "anonymous"
    return f"generations/{safe_owner}/{job_id}.{artifact.extension}"


async def store_with_retries(
    storage: StorageClient,
    artifact: Artifact,
    metadata: Dict[str, Any],
    budget: int = 3,
    delay: float = 1.0
) -> str:
    """
    Upload with a small local retry budget, independent of job attempts.

    Raises StorageExhaustedError once `budget` uploads have failed.
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, budget + 1):
        try:
            return await storage.store(artifact, metadata)
        except StorageError as e:
            last_error = e
            logger.warning(
                "Artifact upload failed",
                key=metadata.get("key"),
                attempt=attempt,
                budget=budget,
                error=str(e)
            )
            if attempt < budget:
                await asyncio.sleep(delay * attempt)

    raise StorageExhaustedError(
        f"Artifact upload failed after {budget} attempts: {last_error}"
    )
