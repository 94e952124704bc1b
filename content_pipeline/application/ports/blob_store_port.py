from abc import ABC, abstractmethod


class BlobStorePort(ABC):
    """Byte storage for raw uploaded documents, addressed by the caller's key."""

    @abstractmethod
    def get(self, storage_key: str) -> bytes:
        """Returns the blob stored under ``storage_key``. Raises BlobStoreError."""
        pass

    @abstractmethod
    def put(self, storage_key: str, data: bytes, content_type: str) -> str:
        """Stores ``data`` under ``storage_key`` and returns the key. Raises BlobStoreError."""
        pass

    @abstractmethod
    def delete(self, storage_key: str) -> None:
        pass
