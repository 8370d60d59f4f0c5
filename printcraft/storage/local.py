"""
Filesystem storage for local development.

Artifacts are written under a directory that the API serves statically.
"""

import asyncio
import os
from typing import Dict, Any

from printcraft.storage.base import StorageClient, StorageError
from printcraft.utils.logging import storage_logger as logger


class LocalStorage(StorageClient):
    """Writes artifacts to disk and returns URLs under `public_base_url`."""

    name = "local"

    def __init__(self, root_dir: str = "./generated_images", public_base_url: str = "/images"):
        super().__init__()
        self.root_dir = root_dir
        self.public_base_url = public_base_url.rstrip("/")
        self.uploads = 0

    def path_for(self, key: str) -> str:
        return os.path.join(self.root_dir, *key.split("/"))

    def _write(self, path: str, data: bytes):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    async def _put(self, key: str, data: bytes, content_type: str, metadata: Dict[str, Any]) -> str:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

        self.uploads += 1
        logger.info("Artifact stored locally", key=key, size=len(data))
        return f"{self.public_base_url}/{key}"
