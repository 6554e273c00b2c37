"""
In-memory object store implementation for testing.

This module provides a simple in-memory ObjectStore for:
- Unit tests of publishing and retention
- Integration tests of the full pipeline without network access
- Failure injection (per-key upload failures)

Invariants:
    - All data is lost on process exit
    - Records every mutating operation in order for assertions

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ObjectStore protocol
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, Dict, List, Optional, Set, Tuple

from ..errors import StorageError
from .base import StoredObject

logger = logging.getLogger(__name__)


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore for testing.

    Attributes:
        objects: Stored bytes by key
        operations: ("put" | "delete", key) in the order they happened
        fail_uploads: Keys (or key suffixes) whose upload raises StorageError

    Example:
        >>> store = InMemoryObjectStore(fail_uploads={".sig"})
        >>> await store.upload_bytes("a.sha256", b"...")
    """

    def __init__(self, fail_uploads: Optional[Set[str]] = None) -> None:
        self.objects: Dict[str, bytes] = {}
        self.modified: Dict[str, datetime] = {}
        self.operations: List[Tuple[str, str]] = []
        self.fail_uploads: Set[str] = set(fail_uploads or ())
        self.closed = False

    def _check_failure(self, key: str) -> None:
        for pattern in self.fail_uploads:
            if key == pattern or key.endswith(pattern):
                raise StorageError(f"Injected upload failure for {key}", key=key)

    def _put(self, key: str, data: bytes) -> StoredObject:
        self.objects[key] = data
        self.modified[key] = datetime.now(timezone.utc)
        self.operations.append(("put", key))
        return StoredObject(key=key, size_bytes=len(data), last_modified=self.modified[key])

    async def upload_file(
        self, path: str | Path, key: str, content_type: Optional[str] = None
    ) -> StoredObject:
        self._check_failure(key)
        return self._put(key, Path(path).read_bytes())

    async def upload_bytes(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> StoredObject:
        self._check_failure(key)
        return self._put(key, bytes(data))

    async def upload_stream(
        self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None
    ) -> StoredObject:
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            self._check_failure(key)
        self._check_failure(key)
        return self._put(key, bytes(buffer))

    async def list(self, prefix: str = "") -> list[StoredObject]:
        return [
            StoredObject(key=key, size_bytes=len(data), last_modified=self.modified.get(key))
            for key, data in self.objects.items()
            if key.startswith(prefix)
        ]

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def read_bytes(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise StorageError(f"No such object: {key}", key=key)

    async def delete(self, key: str) -> bool:
        if key not in self.objects:
            return False
        del self.objects[key]
        self.modified.pop(key, None)
        self.operations.append(("delete", key))
        return True

    async def close(self) -> None:
        self.closed = True

    def describe(self, key: str = "") -> str:
        return f"memory://{key}"

    # Testing helpers

    def put_keys(self) -> List[str]:
        """Keys in upload order."""
        return [key for op, key in self.operations if op == "put"]
