"""
Supabase Storage backend for generated artifacts.

Uses the service role key, so uploads bypass Row Level Security.
Only use server-side.
"""

import asyncio
from functools import lru_cache
from typing import Dict, Any

from supabase import create_client, Client

from printcraft.storage.base import StorageClient, StorageError
from printcraft.utils.logging import storage_logger as logger


class SupabaseClientError(Exception):
    """Raised when Supabase client cannot be initialized."""
    pass


@lru_cache(maxsize=4)
def get_supabase_admin_client(url: str, service_key: str) -> Client:
    """Get Supabase client with service role key (admin access)."""
    if not url:
        raise SupabaseClientError(
            "SUPABASE_URL is not configured. "
            "Set it in your .env file or environment variables."
        )

    if not service_key:
        raise SupabaseClientError(
            "SUPABASE_SERVICE_KEY is not configured. "
            "Set it in your .env file or environment variables."
        )

    return create_client(url, service_key)


class SupabaseStorage(StorageClient):
    """Uploads artifacts to a Supabase Storage bucket."""

    name = "supabase"

    def __init__(self, client: Client, bucket: str):
        super().__init__()
        self.client = client
        self.bucket = bucket

    def _upload(self, key: str, data: bytes, content_type: str) -> str:
        bucket = self.client.storage.from_(self.bucket)
        bucket.upload(
            path=key,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"}
        )
        return bucket.get_public_url(key)

    async def _put(self, key: str, data: bytes, content_type: str, metadata: Dict[str, Any]) -> str:
        try:
            # supabase-py storage calls are blocking
            public_url = await asyncio.to_thread(self._upload, key, data, content_type)
        except Exception as e:
            raise StorageError(f"Supabase upload of {key} failed: {e}") from e

        logger.info("Artifact uploaded", bucket=self.bucket, key=key, size=len(data))
        return public_url
