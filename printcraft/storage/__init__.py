"""
Artifact storage.

Components:
- StorageClient: store(artifact, metadata) -> reference
- LocalStorage: filesystem (development)
- SupabaseStorage: Supabase Storage bucket (production)
"""

from printcraft.storage.base import (
    StorageClient,
    StorageError,
    StorageExhaustedError,
    artifact_key,
    store_with_retries,
)
from printcraft.storage.local import LocalStorage

__all__ = [
    "StorageClient",
    "StorageError",
    "StorageExhaustedError",
    "artifact_key",
    "store_with_retries",
    "LocalStorage",
]
