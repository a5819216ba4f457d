"""
Storage Abstraction Layer - The Bridge Pattern

Holds uploaded images between the upload endpoint and the submission
worker. The storage key travels in the submit job; the worker releases it
exactly once when the submission finishes, successfully or not.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from datetime import datetime

from erazor.core.config import settings


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
    ) -> str:
        """
        Upload a file and return its unique storage key.

        Args:
            file_data: Raw bytes of the file
            filename: Original filename (only its extension is kept)
            folder: Subfolder/container prefix

        Returns:
            Storage key usable with read() and delete()
        """

    @abstractmethod
    async def read(self, storage_key: str) -> bytes:
        """Read a stored file. Raises FileNotFoundError when it is gone."""

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if a file was removed, False if nothing was there
        """

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""


class LocalStorage(IStorage):
    """Local filesystem storage on a volume shared by the API and workers."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_unique_filename(self, filename: str) -> str:
        """Generate a unique filename with UUID prefix."""
        ext = Path(filename).suffix.lower()
        unique_id = uuid.uuid4().hex[:12]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{timestamp}_{unique_id}{ext}"

    def _resolve(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes base path: {storage_key}")
        return path

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
    ) -> str:
        folder_path = self.base_path / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        unique_filename = self._get_unique_filename(filename)
        file_path = folder_path / unique_filename

        await asyncio.to_thread(file_path.write_bytes, file_data)

        return f"{folder}/{unique_filename}"

    async def read(self, storage_key: str) -> bytes:
        return await asyncio.to_thread(self._resolve(storage_key).read_bytes)

    async def delete(self, storage_key: str) -> bool:
        file_path = self._resolve(storage_key)
        try:
            await asyncio.to_thread(file_path.unlink)
            return True
        except FileNotFoundError:
            return False

    async def exists(self, storage_key: str) -> bool:
        return self._resolve(storage_key).exists()


class StorageFactory:
    """Factory for the process-wide storage instance."""

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
