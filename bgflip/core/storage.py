"""
Storage Abstraction Layer - The Bridge Pattern

Blob store for original uploads and processed outputs, organised in buckets.
LocalStorage serves files from disk for development; SupabaseStorage talks to
Supabase Storage buckets in production.
"""

import asyncio
import mimetypes
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from bgflip.core.config import Settings
from bgflip.core.exceptions import StorageError
from bgflip.core.logging import get_logger

logger = get_logger(__name__)


def generate_storage_key(filename: str, content_type: Optional[str] = None) -> str:
    """Fresh, collision-free key that keeps the file extension: <epoch-ms>-<uuid>.<ext>"""
    ext = Path(filename).suffix.lower()
    if not ext and content_type:
        ext = mimetypes.guess_extension(content_type) or ""
    if ext == ".jpe":
        ext = ".jpg"
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{ext}"


class IStorage(ABC):
    """Interface for blob storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        data: bytes,
        filename: str,
        content_type: str = "image/png"
    ) -> str:
        """
        Upload bytes under a fresh key and return that key.

        Args:
            bucket: Bucket (container) name
            data: Raw bytes of the file
            filename: Original filename, used for its extension
            content_type: MIME type of the file

        Returns:
            Storage key usable with download(), get_public_url() and delete()
        """

    @abstractmethod
    async def download(self, bucket: str, key: str) -> bytes:
        """Read back the bytes stored under key."""

    @abstractmethod
    def get_public_url(self, bucket: str, key: str) -> str:
        """Publicly addressable URL for a stored object."""

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> bool:
        """
        Delete an object.

        Returns:
            True if an object was removed, False if there was nothing to remove
        """

    @abstractmethod
    async def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage", public_base_url: str = "http://localhost:8000"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.base_path / bucket / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}", bucket=bucket)
        return path

    async def upload(
        self,
        bucket: str,
        data: bytes,
        filename: str,
        content_type: str = "image/png"
    ) -> str:
        key = generate_storage_key(filename, content_type)
        file_path = self._path(bucket, key)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(file_path.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}", bucket=bucket)
        return key

    async def download(self, bucket: str, key: str) -> bytes:
        file_path = self._path(bucket, key)
        try:
            return await asyncio.to_thread(file_path.read_bytes)
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}", bucket=bucket)

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self.public_base_url}/static/storage/{bucket}/{key}"

    async def delete(self, bucket: str, key: str) -> bool:
        file_path = self._path(bucket, key)
        try:
            if file_path.exists():
                file_path.unlink()
                return True
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}", bucket=bucket)

    async def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).exists()


class SupabaseStorage(IStorage):
    """Supabase Storage buckets for production.

    The supabase client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> "SupabaseStorage":
        from supabase import create_client

        return cls(create_client(url, key))

    def _bucket(self, bucket: str):
        return self.client.storage.from_(bucket)

    async def upload(
        self,
        bucket: str,
        data: bytes,
        filename: str,
        content_type: str = "image/png"
    ) -> str:
        key = generate_storage_key(filename, content_type)
        try:
            await asyncio.to_thread(
                self._bucket(bucket).upload,
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "false"}
            )
        except Exception as e:
            raise StorageError(f"Failed to upload to {bucket}: {e}", bucket=bucket)
        return key

    async def download(self, bucket: str, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._bucket(bucket).download, key)
        except Exception as e:
            raise StorageError(f"Failed to download {key}: {e}", bucket=bucket)

    def get_public_url(self, bucket: str, key: str) -> str:
        return self._bucket(bucket).get_public_url(key)

    async def delete(self, bucket: str, key: str) -> bool:
        try:
            removed = await asyncio.to_thread(self._bucket(bucket).remove, [key])
        except Exception as e:
            raise StorageError(f"Failed to delete {key}: {e}", bucket=bucket)
        return bool(removed)

    async def exists(self, bucket: str, key: str) -> bool:
        try:
            entries = await asyncio.to_thread(
                self._bucket(bucket).list, "", {"search": key}
            )
        except Exception as e:
            raise StorageError(f"Failed to look up {key}: {e}", bucket=bucket)
        return any(entry.get("name") == key for entry in entries or [])


class StorageFactory:
    """
    Factory for creating storage instances.

    STORAGE_BACKEND=supabase with SUPABASE_URL and SUPABASE_SERVICE_KEY selects
    Supabase Storage; anything else uses the local filesystem.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls, config: Settings) -> IStorage:
        """Get the storage implementation selected by the configuration."""
        if cls._instance is None:
            if config.STORAGE_BACKEND.lower() == "supabase":
                if not (config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY):
                    raise StorageError(
                        "STORAGE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_KEY"
                    )
                cls._instance = SupabaseStorage.from_credentials(
                    config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY
                )
                logger.info("storage_initialized", backend="supabase")
            else:
                cls._instance = LocalStorage(
                    base_path=config.LOCAL_STORAGE_PATH,
                    public_base_url=config.PUBLIC_BASE_URL
                )
                logger.info("storage_initialized", backend="local", path=config.LOCAL_STORAGE_PATH)

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None
