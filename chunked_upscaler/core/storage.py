"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for persisting encoded artifacts with
LocalStorage as the active implementation.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from chunked_upscaler.core.config import settings


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        """
        Upload a file and return its storage key.

        Args:
            file_data: Raw bytes of the file
            filename: Artifact filename, kept as-is
            folder: Subfolder/container prefix
            content_type: MIME type of the file

        Returns:
            Storage key/path that can be used with get_url()
        """
        pass

    @abstractmethod
    async def get_url(self, storage_key: str) -> str:
        """Get a URL for accessing the file."""
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        folder_path = self.base_path / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        # Artifact names already carry a timestamp
        file_path = folder_path / Path(filename).name
        with open(file_path, "wb") as f:
            f.write(file_data)

        return f"{folder}/{file_path.name}"

    async def get_url(self, storage_key: str) -> str:
        """For local storage, return a relative path that can be served."""
        file_path = self.base_path / storage_key
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {storage_key}")

        return f"/static/storage/{storage_key}"

    async def exists(self, storage_key: str) -> bool:
        return (self.base_path / storage_key).exists()


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
