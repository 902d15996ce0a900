"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for object storage with LocalStorage (development)
and GCSStorage (production). Both persist bytes under a caller-chosen path
and mint time-limited, read-only signed URLs for it.
"""

import asyncio
import hmac
import hashlib
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from cutout_orders.core.config import settings
from cutout_orders.core.exceptions import StorageWriteError, StorageSignError
from cutout_orders.core.logging import get_logger

logger = get_logger(__name__)


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        path: str,
        file_data: bytes,
        content_type: str = "image/png"
    ) -> str:
        """
        Write bytes to the given path, overwriting any existing object.

        Args:
            path: Object path, e.g. "thumbnails/u1/cat_x1y2.png"
            file_data: Raw bytes of the file
            content_type: MIME type of the file

        Returns:
            The path that was written

        Raises:
            StorageWriteError: If the backend rejects the write
        """
        pass

    @abstractmethod
    async def sign(self, path: str, expires_in: Optional[int] = None) -> str:
        """
        Mint a read-only URL for the object at path.

        Args:
            path: Object path previously passed to upload()
            expires_in: Seconds until the URL expires

        Raises:
            StorageSignError: If there is no object or signing fails
        """
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if an object exists in storage."""
        pass


class LocalStorage(IStorage):
    """
    Local filesystem storage implementation for development.

    Signed URLs point at the API's /static/storage route and carry an
    HMAC-SHA256 signature over path and expiry, checked by verify().
    """

    def __init__(
        self,
        base_path: str = "./data/storage",
        base_url: str = "http://localhost:8000",
        secret: str = "change-me"
    ):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")

    def _resolve(self, path: str) -> Path:
        file_path = (self.base_path / path).resolve()
        if self.base_path not in file_path.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return file_path

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}|{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def upload(
        self,
        path: str,
        file_data: bytes,
        content_type: str = "image/png"
    ) -> str:
        try:
            file_path = self._resolve(path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(file_data)
        except (OSError, ValueError) as e:
            raise StorageWriteError(f"Failed to write {path}: {e}", path=path)

        return path

    async def sign(self, path: str, expires_in: Optional[int] = None) -> str:
        expires_in = expires_in or settings.SIGNED_URL_TTL_SECONDS
        if not await self.exists(path):
            raise StorageSignError(f"No object at {path}", path=path)

        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/static/storage/{quote(path)}?{query}"

    async def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ValueError:
            return False

    def verify(self, path: str, expires: int, signature: str) -> bool:
        """Check a signature minted by sign() and that it has not expired."""
        if expires < time.time():
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)

    def open_path(self, path: str) -> Path:
        """Filesystem location of a stored object."""
        return self._resolve(path)


class GCSStorage(IStorage):
    """
    Google Cloud Storage implementation for production.

    The client library is synchronous; calls run in a worker thread so
    parallel uploads do not block the event loop.
    """

    def __init__(self, bucket_name: str, client=None):
        from google.cloud import storage as gcs

        self.client = client or gcs.Client()
        self.bucket = self.client.bucket(bucket_name)
        self.bucket_name = bucket_name

    async def upload(
        self,
        path: str,
        file_data: bytes,
        content_type: str = "image/png"
    ) -> str:
        blob = self.bucket.blob(path)
        try:
            await asyncio.to_thread(blob.upload_from_string, file_data, content_type=content_type)
        except Exception as e:
            logger.error("gcs_upload_failed", path=path, error=str(e))
            raise StorageWriteError(f"Failed to upload gs://{self.bucket_name}/{path}: {e}", path=path)
        return path

    async def sign(self, path: str, expires_in: Optional[int] = None) -> str:
        expires_in = expires_in or settings.SIGNED_URL_TTL_SECONDS
        blob = self.bucket.blob(path)
        try:
            if not await asyncio.to_thread(blob.exists):
                raise StorageSignError(f"No object at gs://{self.bucket_name}/{path}", path=path)
            return await asyncio.to_thread(
                blob.generate_signed_url,
                version="v4",
                expiration=timedelta(seconds=expires_in),
                method="GET"
            )
        except StorageSignError:
            raise
        except Exception as e:
            logger.error("gcs_sign_failed", path=path, error=str(e))
            raise StorageSignError(f"Failed to sign gs://{self.bucket_name}/{path}: {e}", path=path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self.bucket.blob(path).exists)


class StorageFactory:
    """
    Factory for creating storage instances.

    STORAGE_BACKEND=local keeps objects on disk for development;
    STORAGE_BACKEND=gcs with GCS_BUCKET set writes to the bucket.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on settings."""
        if cls._instance is None:
            backend = settings.STORAGE_BACKEND.lower()
            if backend == "gcs":
                if not settings.GCS_BUCKET:
                    raise ValueError("GCS_BUCKET is required for the gcs storage backend")
                cls._instance = GCSStorage(settings.GCS_BUCKET)
            elif backend == "local":
                cls._instance = LocalStorage(
                    base_path=settings.LOCAL_STORAGE_PATH,
                    base_url=settings.PUBLIC_BASE_URL,
                    secret=settings.URL_SIGNING_SECRET
                )
            else:
                raise RuntimeError(f"Unsupported STORAGE_BACKEND: {settings.STORAGE_BACKEND}")

            logger.info("storage_initialized", backend=backend)

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
