"""
Base protocol and types for the object storage abstraction.

Snapshots are published to durable object storage (S3, Cloudflare R2) and
staged in a local directory. Both are accessed through the ObjectStore
protocol so that publishing and retention work the same on either.

Invariants:
    - Keys are "/"-separated and relative to the store root
    - upload_* returns only after the object is durably stored
    - delete() of a missing key is not an error
    - list() returns every object under the prefix, in no particular order

How to change safely:
    - Protocol changes require updating all implementations
    - Keep InMemoryObjectStore in step; the tests rely on it
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterable, Optional, Protocol, runtime_checkable
from pathlib import Path

if TYPE_CHECKING:
    from ..config import SnapshotConfig

CONTENT_TYPES = {
    ".zst": "application/zstd",
    ".sha256": "text/plain",
    ".sig": "application/pgp-signature",
    ".json": "application/json",
}


def content_type_for(key: str) -> str:
    """Guess the content type of a snapshot artifact from its key."""
    for suffix, content_type in CONTENT_TYPES.items():
        if key.endswith(suffix):
            return content_type
    return "application/octet-stream"


@dataclass(frozen=True)
class StoredObject:
    """An object in a store.

    Attributes:
        key: Key relative to the store root
        size_bytes: Object size
        last_modified: Modification time, if known
    """

    key: str
    size_bytes: int
    last_modified: Optional[datetime] = None


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for object storage backends.

    Example:
        >>> store = create_object_store(config)
        >>> await store.upload_file("/snapshots/x.tar.zst", "x.tar.zst")
        >>> [obj.key for obj in await store.list()]
        ['x.tar.zst']
    """

    @abstractmethod
    async def upload_file(
        self, path: str | Path, key: str, content_type: Optional[str] = None
    ) -> StoredObject:
        """Upload a local file.

        Raises:
            StorageError: If the upload fails
        """
        ...

    @abstractmethod
    async def upload_bytes(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> StoredObject:
        """Upload an in-memory object.

        Raises:
            StorageError: If the upload fails
        """
        ...

    @abstractmethod
    async def upload_stream(
        self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None
    ) -> StoredObject:
        """Upload an object from an async byte stream, consuming it fully.

        Raises:
            StorageError: If the upload fails; no partial object remains
        """
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[StoredObject]:
        """List objects whose key starts with prefix."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Whether an object exists."""
        ...

    @abstractmethod
    async def read_bytes(self, key: str) -> bytes:
        """Read a whole object.

        Raises:
            StorageError: If the object is missing or unreadable
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete an object.

        Returns:
            True if an object was removed, False if it did not exist
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...

    @abstractmethod
    def describe(self, key: str = "") -> str:
        """Human-readable location of a key, for logs."""
        ...


def create_object_store(config: "SnapshotConfig") -> ObjectStore:
    """Factory creating the remote object store from configuration."""
    from .s3 import S3ObjectStore

    return S3ObjectStore(config.s3)
