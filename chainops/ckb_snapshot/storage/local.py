"""
Local directory object store.

Used for the snapshot staging directory: the controller writes artifacts
there directly, and retention prunes it through the same ObjectStore
interface it uses for remote storage.

Invariants:
    - Writes go to a ".partial" sibling and are renamed into place
    - Keys never escape the root directory
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, Optional

from ..errors import StorageError
from .base import StoredObject

logger = logging.getLogger(__name__)

_PARTIAL = ".partial"


class LocalObjectStore:
    """ObjectStore over a local directory.

    Attributes:
        root: Directory holding the objects
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        """Filesystem path of a key."""
        root = self.root.resolve()
        path = (root / key).resolve()
        if path != root and root not in path.parents:
            raise StorageError(f"Key escapes store root: {key}", key=key)
        return path

    def _stat(self, key: str, path: Path) -> StoredObject:
        st = path.stat()
        return StoredObject(
            key=key,
            size_bytes=st.st_size,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def _copy(self, source: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + _PARTIAL)
        try:
            shutil.copyfile(source, tmp)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    async def upload_file(
        self, path: str | Path, key: str, content_type: Optional[str] = None
    ) -> StoredObject:
        source = Path(path)
        dest = self.path_for(key)
        try:
            if source.resolve() != dest:
                await asyncio.get_running_loop().run_in_executor(None, self._copy, source, dest)
            return self._stat(key, dest)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}", key=key)

    async def upload_bytes(
        self, key: str, data: bytes, content_type: Optional[str] = None
    ) -> StoredObject:
        dest = self.path_for(key)
        tmp = dest.with_name(dest.name + _PARTIAL)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, dest)
            return self._stat(key, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to store {key}: {e}", key=key)

    async def upload_stream(
        self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None
    ) -> StoredObject:
        dest = self.path_for(key)
        tmp = dest.with_name(dest.name + _PARTIAL)
        loop = asyncio.get_running_loop()
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                async for chunk in chunks:
                    await loop.run_in_executor(None, f.write, chunk)
            os.replace(tmp, dest)
            return self._stat(key, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to store {key}: {e}", key=key)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    async def list(self, prefix: str = "") -> list[StoredObject]:
        if not self.root.exists():
            return []
        objects = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(_PARTIAL):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                objects.append(self._stat(key, path))
        return objects

    async def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    async def read_bytes(self, key: str) -> bytes:
        try:
            return self.path_for(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}", key=key)

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}", key=key)
        return True

    async def close(self) -> None:
        pass

    def describe(self, key: str = "") -> str:
        return str(self.root / key) if key else str(self.root)
